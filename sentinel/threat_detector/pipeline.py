"""
Risk Classifier Pipeline - multi-stage analysis of the selected process

Handles:
- Local heuristic pass (entropy readout + RiskScorer)
- External classification and follow-on research calls
- Independent visual-evidence track
- Stale-response suppression and in-flight de-duplication

External calls run off the control thread. Their results are queued and only
applied when the control thread calls `drain()`.
"""
import logging
from datetime import datetime
from enum import Enum
from queue import Empty, Queue
from threading import Thread
from typing import Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from sentinel.log_analysis.audit import ALERT_II, ALERT_III
from sentinel.log_analysis.audit_log import AuditLog
from sentinel.sysmon.models import ProcessRecord, RiskLevel
from sentinel.sysmon.telemetry_store import TelemetryStore
from sentinel.threat_detector.ai_client import (
    AISupervisorClient,
    ClassificationResponse,
    ResearchResponse,
    VISUAL_UNAVAILABLE,
)
from sentinel.threat_detector.heuristics import RiskScorer

logger = logging.getLogger(__name__)

Dispatcher = Callable[[Callable[[], None]], None]

CLASSIFICATION = "classification"
RESEARCH = "research"
VISUAL = "visual"
HEURISTIC = "heuristic"


class PipelineStage(str, Enum):
    IDLE = "IDLE"
    HEURISTIC = "HEURISTIC"
    AWAITING_CLASSIFICATION = "AWAITING_CLASSIFICATION"
    CLASSIFIED = "CLASSIFIED"
    AWAITING_RESEARCH = "AWAITING_RESEARCH"
    RESEARCHED = "RESEARCHED"


class VisualStage(str, Enum):
    VISUAL_IDLE = "VISUAL_IDLE"
    AWAITING_VISUAL = "AWAITING_VISUAL"
    VISUAL_DONE = "VISUAL_DONE"


class AnalysisResult(BaseModel):
    pid: Optional[int] = None
    stage: str
    risk_score: float = 0.0
    classification: RiskLevel = RiskLevel.UNKNOWN
    reasoning: str = ""
    recommended_action: str = ""
    content: str = ""
    sources: List[Tuple[str, str]] = Field(default_factory=list)


def thread_dispatcher(job: Callable[[], None]) -> None:
    Thread(target=job, daemon=True, name="sentinel-ai-call").start()


class RiskClassifierPipeline:
    """State machine driving analysis of whichever process is selected in the store."""

    def __init__(
        self,
        store: TelemetryStore,
        client: AISupervisorClient,
        scorer: Optional[RiskScorer] = None,
        dispatcher: Optional[Dispatcher] = None,
        audit_log: Optional[AuditLog] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.client = client
        self.scorer = scorer or RiskScorer()
        self.dispatcher = dispatcher or thread_dispatcher
        self.audit_log = audit_log if audit_log is not None else store.audit_log
        self._clock = clock or datetime.now

        self.target_pid: Optional[int] = store.selected_pid
        self.stage = PipelineStage.IDLE
        self.visual_stage = VisualStage.VISUAL_IDLE
        self.visual_result: Optional[AnalysisResult] = None
        self.console = AuditLog(clock=self._clock)

        self._results: Dict[Tuple[Optional[int], str], AnalysisResult] = {}
        self._in_flight: Dict[str, Optional[int]] = {CLASSIFICATION: None, RESEARCH: None, VISUAL: None}
        self._visual_token = 0
        self._completed: Queue = Queue()

        store.add_selection_listener(self.on_selection_change)

    # ------------------------------------------------------------------ state

    def result(self, stage: str) -> Optional[AnalysisResult]:
        """Result of a process-scoped stage for the current target."""
        return self._results.get((self.target_pid, stage))

    def is_in_flight(self, kind: str) -> bool:
        return self._in_flight.get(kind) is not None

    @property
    def has_pending(self) -> bool:
        return any(v is not None for v in self._in_flight.values())

    def on_selection_change(self, pid: Optional[int]) -> None:
        if pid == self.target_pid:
            return
        # outstanding calls are not cancelled, their results go stale
        self.target_pid = pid
        self.stage = PipelineStage.IDLE
        self._results = {k: v for k, v in self._results.items() if k[1] == VISUAL}
        self.console = AuditLog(clock=self._clock)

    # --------------------------------------------------------------- triggers

    def trigger_analysis(self, pid: Optional[int] = None) -> bool:
        """
        Runs the heuristic pass and issues the classification request.

        Args:
            pid (int): Process to analyze, must be the current target. Defaults
                to the current target.

        Returns:
            bool: True when a classification request was issued.
        """
        pid = self.target_pid if pid is None else pid
        if pid is None or pid != self.target_pid:
            logger.warning(f"Analysis requested for PID {pid} but the pipeline targets {self.target_pid}")
            return False

        proc = self.store.get(pid)
        if proc is None:
            logger.warning(f"Analysis requested for PID {pid} which is no longer live")
            return False

        if self.is_in_flight(CLASSIFICATION):
            logger.debug(f"Classification already in flight for PID {self._in_flight[CLASSIFICATION]}, ignored")
            return False

        self._results.pop((pid, CLASSIFICATION), None)
        self._results.pop((pid, RESEARCH), None)
        self._run_heuristic(proc)

        self.stage = PipelineStage.AWAITING_CLASSIFICATION
        self.console.append("AI", "Transmitting feature vector to the AI Supervisor...")
        self._in_flight[CLASSIFICATION] = pid
        snapshot = proc.model_copy(deep=True)
        self._dispatch(CLASSIFICATION, pid, lambda: self.client.classify_process(snapshot))
        return True

    def trigger_research(self, pid: Optional[int] = None) -> bool:
        pid = self.target_pid if pid is None else pid
        if pid is None or pid != self.target_pid:
            logger.warning(f"Research requested for PID {pid} but the pipeline targets {self.target_pid}")
            return False

        if self.stage not in (PipelineStage.CLASSIFIED, PipelineStage.RESEARCHED):
            logger.warning(f"Research for PID {pid} requires a completed classification (stage {self.stage.value})")
            return False

        proc = self.store.get(pid)
        if proc is None:
            logger.warning(f"Research requested for PID {pid} which is no longer live")
            return False

        if self.is_in_flight(RESEARCH):
            logger.debug(f"Research already in flight for PID {self._in_flight[RESEARCH]}, ignored")
            return False

        name = proc.name
        self.stage = PipelineStage.AWAITING_RESEARCH
        self.console.append("AI", "Connecting to Global Intelligence Network...")
        self.console.append("AI", f'Querying search grounding for "{name}"...')
        self._in_flight[RESEARCH] = pid
        self._dispatch(RESEARCH, pid, lambda: self.client.research_process(name))
        return True

    def submit_visual_evidence(self, image: bytes, mime_type: str) -> bool:
        if not image:
            logger.warning("Visual evidence submitted without image data, ignored")
            return False

        if self.is_in_flight(VISUAL):
            logger.debug("Visual analysis already in flight, ignored")
            return False

        self._visual_token += 1
        token = self._visual_token
        self.visual_stage = VisualStage.AWAITING_VISUAL
        self.visual_result = None
        self.console.append("AI", "Uploading visual evidence to the AI Supervisor...")
        self._in_flight[VISUAL] = token
        data = bytes(image)
        self._dispatch(VISUAL, token, lambda: self.client.analyze_screenshot(data, mime_type))
        return True

    def clear_visual(self) -> None:
        """Drops the visual result; an outstanding visual call becomes stale."""
        self._visual_token += 1
        self.visual_stage = VisualStage.VISUAL_IDLE
        self.visual_result = None

    # ------------------------------------------------------------- heuristic

    def _run_heuristic(self, proc: ProcessRecord) -> None:
        self.stage = PipelineStage.HEURISTIC
        self.console.append("AI", f"Initiating feature vector extraction for PID {proc.pid}...")
        self.console.append("AI", f"Calculating Shannon Entropy: {proc.entropy:.2f}")

        report = self.scorer.evaluate(proc)
        self._results[(proc.pid, HEURISTIC)] = AnalysisResult(
            pid=proc.pid,
            stage=HEURISTIC,
            risk_score=report.score,
            classification=report.level,
            reasoning=report.reasoning,
            recommended_action=self.scorer.recommended_action(report.level),
        )
        self.console.append("AI", f"Local heuristic score {report.score:.2f} ({report.level.value}): {report.reasoning}")

    # -------------------------------------------------------- async plumbing

    def _dispatch(self, kind: str, key: int, call: Callable[[], object]) -> None:
        def job():
            try:
                response = call()
            except Exception:
                logger.exception(f"Unexpected failure in {kind} call")
                response = None
            self._completed.put((kind, key, response))

        self.dispatcher(job)

    def drain(self) -> int:
        """
        Applies every completed external call. Must run on the control thread.

        Returns:
            int: Number of completions processed, stale ones included.
        """
        processed = 0
        while True:
            try:
                kind, key, response = self._completed.get_nowait()
            except Empty:
                break
            processed += 1
            self._in_flight[kind] = None

            if kind == CLASSIFICATION:
                self._apply_classification(key, response)
            elif kind == RESEARCH:
                self._apply_research(key, response)
            elif kind == VISUAL:
                self._apply_visual(key, response)
        return processed

    def _apply_classification(self, pid: int, response: Optional[ClassificationResponse]) -> None:
        if pid != self.target_pid or self.stage != PipelineStage.AWAITING_CLASSIFICATION:
            logger.debug(f"Dropping stale classification for PID {pid}")
            return

        if not isinstance(response, ClassificationResponse):
            response = ClassificationResponse.fallback()

        self._results[(pid, CLASSIFICATION)] = AnalysisResult(
            pid=pid,
            stage=CLASSIFICATION,
            risk_score=response.risk_score,
            classification=response.classification,
            reasoning=response.reasoning,
            recommended_action=response.recommended_action,
        )
        self.stage = PipelineStage.CLASSIFIED
        self.console.append("AI", f"Inference Complete. Score: {response.risk_score:.4f}")

        proc = self.store.get(pid)
        if response.available and proc is not None:
            proc.risk_level = response.classification

        name = proc.name if proc is not None else "?"
        self.audit_log.append(
            "AI", f"PID {pid} ({name}) classified {response.classification.value}: {response.recommended_action}."
        )
        if response.classification == RiskLevel.MALICIOUS:
            logger.log(ALERT_III, f"Malicious process PID {pid} ({name}): {response.reasoning}")
        elif response.classification == RiskLevel.SUSPICIOUS:
            logger.log(ALERT_II, f"Suspicious process PID {pid} ({name}): {response.reasoning}")

    def _apply_research(self, pid: int, response: Optional[ResearchResponse]) -> None:
        if pid != self.target_pid or self.stage != PipelineStage.AWAITING_RESEARCH:
            logger.debug(f"Dropping stale research for PID {pid}")
            return

        if not isinstance(response, ResearchResponse):
            response = ResearchResponse.fallback()

        self._results[(pid, RESEARCH)] = AnalysisResult(
            pid=pid,
            stage=RESEARCH,
            content=response.content,
            sources=list(response.sources),
        )
        self.stage = PipelineStage.RESEARCHED
        self.console.append("AI", f"Intelligence gathered from {len(response.sources)} sources.")

    def _apply_visual(self, token: int, response: Optional[str]) -> None:
        if token != self._visual_token:
            logger.debug("Dropping stale visual analysis")
            return

        text = response if isinstance(response, str) and response else VISUAL_UNAVAILABLE
        self.visual_result = AnalysisResult(stage=VISUAL, content=text)
        self._results[(None, VISUAL)] = self.visual_result
        self.visual_stage = VisualStage.VISUAL_DONE
        self.console.append("AI", "Visual Analysis Complete.")
        self.audit_log.append("AI", "Visual evidence analysis complete.")
