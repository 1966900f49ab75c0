import time

import pytest

from sentinel.sysmon.models import RiskLevel
from sentinel.threat_detector.ai_client import ClassificationResponse, ResearchResponse
from sentinel.threat_detector.pipeline import (
    PipelineStage,
    RiskClassifierPipeline,
    VisualStage,
    thread_dispatcher,
)

from conftest import observation


def verdict(level="MALICIOUS", score=0.95, action="Kill"):
    return ClassificationResponse(risk_score=score, classification=level,
                                  reasoning="Packed, unsigned and busy.", recommended_action=action)


@pytest.fixture
def live_store(store):
    store.ingest([
        observation(4, 0, "System", cpu=0.1),
        observation(1337, 1024, "updater_svc.exe", cpu=88.5, entropy=7.9, isSigned=False,
                    handleCount=45000, riskLevel="SUSPICIOUS"),
        observation(5620, 1420, "chrome.exe", cpu=12.4),
    ])
    return store


@pytest.fixture
def pipeline(live_store, mock_client, dispatcher, clock):
    return RiskClassifierPipeline(live_store, mock_client, dispatcher=dispatcher, clock=clock)


class TestClassification:

    def test_analysis_runs_heuristic_then_issues_request(self, pipeline, live_store, dispatcher, mock_client):
        live_store.select(1337)

        assert pipeline.trigger_analysis(1337)

        assert pipeline.stage == PipelineStage.AWAITING_CLASSIFICATION
        assert len(dispatcher.jobs) == 1
        heuristic = pipeline.result("heuristic")
        assert heuristic.pid == 1337
        assert heuristic.classification == RiskLevel.MALICIOUS
        lines = pipeline.console.view()
        assert "Initiating feature vector extraction for PID 1337..." in lines[0]
        assert "Calculating Shannon Entropy: 7.90" in lines[1]
        mock_client.classify_process.assert_not_called()

    def test_heuristic_does_not_change_risk_level(self, pipeline, live_store):
        live_store.select(1337)
        pipeline.trigger_analysis()
        assert live_store.get(1337).risk_level == RiskLevel.SUSPICIOUS

    def test_success_sets_risk_level(self, pipeline, live_store, dispatcher, mock_client, audit_log):
        mock_client.classify_process.return_value = verdict()
        live_store.select(1337)
        pipeline.trigger_analysis()

        dispatcher.run_all()
        assert pipeline.drain() == 1

        assert pipeline.stage == PipelineStage.CLASSIFIED
        result = pipeline.result("classification")
        assert result.risk_score == 0.95
        assert result.recommended_action == "Kill"
        assert live_store.get(1337).risk_level == RiskLevel.MALICIOUS
        assert audit_log.entries()[-1].actor == "AI"
        assert "classified MALICIOUS" in audit_log.entries()[-1].message
        assert "Inference Complete. Score: 0.9500" in pipeline.console.view()[-1]

    def test_request_payload_is_a_snapshot(self, pipeline, live_store, dispatcher, mock_client):
        mock_client.classify_process.return_value = verdict()
        live_store.select(1337)
        pipeline.trigger_analysis()

        live_store.ingest([observation(1337, 1024, cpu=10.0)])
        dispatcher.run_all()

        sent = mock_client.classify_process.call_args.args[0]
        assert sent.pid == 1337
        assert sent.cpu_percent == 88.5
        assert sent is not live_store.get(1337)

    def test_failure_falls_back_and_still_classifies(self, pipeline, live_store, dispatcher, mock_client):
        mock_client.classify_process.return_value = ClassificationResponse.fallback()
        live_store.select(1337)
        pipeline.trigger_analysis()
        dispatcher.run_all()
        pipeline.drain()

        result = pipeline.result("classification")
        assert pipeline.stage == PipelineStage.CLASSIFIED
        assert result.risk_score == 0
        assert result.classification == RiskLevel.UNKNOWN
        assert result.reasoning == "analysis unavailable"
        assert live_store.get(1337).risk_level == RiskLevel.SUSPICIOUS

    def test_raising_client_is_absorbed(self, pipeline, live_store, dispatcher, mock_client):
        mock_client.classify_process.side_effect = RuntimeError("socket exploded")
        live_store.select(1337)
        pipeline.trigger_analysis()

        dispatcher.run_all()
        pipeline.drain()

        assert pipeline.stage == PipelineStage.CLASSIFIED
        assert pipeline.result("classification").reasoning == "analysis unavailable"
        assert not pipeline.has_pending

    def test_second_trigger_while_in_flight_is_ignored(self, pipeline, live_store, dispatcher, mock_client):
        mock_client.classify_process.return_value = verdict()
        live_store.select(1337)

        assert pipeline.trigger_analysis(1337)
        assert not pipeline.trigger_analysis(1337)

        assert len(dispatcher.jobs) == 1
        dispatcher.run_all()
        pipeline.drain()
        assert mock_client.classify_process.call_count == 1

        # once resolved a new trigger is a new request
        assert pipeline.trigger_analysis(1337)
        assert len(dispatcher.jobs) == 1

    def test_trigger_for_other_pid_is_refused(self, pipeline, live_store, dispatcher):
        live_store.select(1337)
        assert not pipeline.trigger_analysis(5620)
        assert dispatcher.jobs == []

    def test_trigger_without_selection_is_refused(self, pipeline, dispatcher):
        assert not pipeline.trigger_analysis()
        assert dispatcher.jobs == []

    def test_tick_during_outstanding_call_leaves_stage_alone(self, pipeline, live_store, dispatcher, mock_client):
        mock_client.classify_process.return_value = verdict()
        live_store.select(1337)
        pipeline.trigger_analysis()

        live_store.ingest([observation(1337, 1024, cpu=55.0)])

        assert live_store.get(1337).cpu_percent == 55.0
        assert pipeline.stage == PipelineStage.AWAITING_CLASSIFICATION


class TestSelectionChange:

    def test_stale_classification_is_dropped(self, pipeline, live_store, dispatcher, mock_client):
        mock_client.classify_process.return_value = verdict()
        live_store.select(1337)
        pipeline.trigger_analysis()

        live_store.select(5620)
        dispatcher.run_all()
        assert pipeline.drain() == 1

        assert pipeline.stage == PipelineStage.IDLE
        assert pipeline.result("classification") is None
        assert live_store.get(1337).risk_level == RiskLevel.SUSPICIOUS
        assert not pipeline.is_in_flight("classification")

    def test_stale_result_dropped_after_returning_to_same_pid(self, pipeline, live_store, dispatcher, mock_client):
        mock_client.classify_process.return_value = verdict()
        live_store.select(1337)
        pipeline.trigger_analysis()
        live_store.select(5620)
        live_store.select(1337)

        dispatcher.run_all()
        pipeline.drain()

        assert pipeline.stage == PipelineStage.IDLE
        assert pipeline.result("classification") is None

    def test_in_flight_slot_held_until_stale_call_resolves(self, pipeline, live_store, dispatcher, mock_client):
        mock_client.classify_process.return_value = verdict()
        live_store.select(1337)
        pipeline.trigger_analysis()
        live_store.select(5620)

        assert not pipeline.trigger_analysis(5620)

        dispatcher.run_all()
        pipeline.drain()
        assert pipeline.trigger_analysis(5620)

    def test_selection_change_clears_stage_data(self, pipeline, live_store, dispatcher, mock_client):
        mock_client.classify_process.return_value = verdict()
        mock_client.research_process.return_value = ResearchResponse(content="miner", sources=[])
        live_store.select(1337)
        pipeline.trigger_analysis()
        dispatcher.run_all()
        pipeline.drain()
        pipeline.trigger_research()
        dispatcher.run_all()
        pipeline.drain()
        assert pipeline.stage == PipelineStage.RESEARCHED

        live_store.select(5620)

        assert pipeline.stage == PipelineStage.IDLE
        for stage in ("heuristic", "classification", "research"):
            assert pipeline.result(stage) is None
        assert len(pipeline.console) == 0

        live_store.select(1337)
        assert pipeline.result("classification") is None

    def test_deselect_resets(self, pipeline, live_store):
        live_store.select(1337)
        pipeline.trigger_analysis()
        live_store.deselect()
        assert pipeline.target_pid is None
        assert pipeline.stage == PipelineStage.IDLE

    def test_terminating_target_resets(self, pipeline, live_store, dispatcher, mock_client):
        mock_client.classify_process.return_value = verdict()
        live_store.select(1337)
        pipeline.trigger_analysis()
        live_store.terminate(1337)

        dispatcher.run_all()
        pipeline.drain()

        assert pipeline.target_pid is None
        assert pipeline.stage == PipelineStage.IDLE


class TestResearch:

    def _classify(self, pipeline, live_store, dispatcher, mock_client):
        mock_client.classify_process.return_value = verdict()
        live_store.select(1337)
        pipeline.trigger_analysis()
        dispatcher.run_all()
        pipeline.drain()

    def test_requires_classification(self, pipeline, live_store, dispatcher):
        live_store.select(1337)
        assert not pipeline.trigger_research()
        pipeline.trigger_analysis()
        assert not pipeline.trigger_research()
        assert len(dispatcher.jobs) == 1

    def test_success(self, pipeline, live_store, dispatcher, mock_client):
        self._classify(pipeline, live_store, dispatcher, mock_client)
        mock_client.research_process.return_value = ResearchResponse(
            content="Not a known Windows component.",
            sources=[("VirusTotal", "https://www.virustotal.com/x"), ("Forum", "https://example.org/y")],
        )

        assert pipeline.trigger_research(1337)
        assert pipeline.stage == PipelineStage.AWAITING_RESEARCH
        dispatcher.run_all()
        pipeline.drain()

        mock_client.research_process.assert_called_once_with("updater_svc.exe")
        assert pipeline.stage == PipelineStage.RESEARCHED
        research = pipeline.result("research")
        assert research.content == "Not a known Windows component."
        assert research.sources[0] == ("VirusTotal", "https://www.virustotal.com/x")
        assert "Intelligence gathered from 2 sources." in pipeline.console.view()[-1]
        # classification survives alongside research
        assert pipeline.result("classification").classification == RiskLevel.MALICIOUS

    def test_failure_falls_back(self, pipeline, live_store, dispatcher, mock_client):
        self._classify(pipeline, live_store, dispatcher, mock_client)
        mock_client.research_process.side_effect = TimeoutError()

        pipeline.trigger_research()
        dispatcher.run_all()
        pipeline.drain()

        assert pipeline.stage == PipelineStage.RESEARCHED
        assert pipeline.result("research").sources == []
        assert pipeline.result("research").content == ResearchResponse.fallback().content

    def test_duplicate_research_ignored(self, pipeline, live_store, dispatcher, mock_client):
        self._classify(pipeline, live_store, dispatcher, mock_client)
        mock_client.research_process.return_value = ResearchResponse(content="x")

        assert pipeline.trigger_research()
        assert not pipeline.trigger_research()
        assert len(dispatcher.jobs) == 1

    def test_stale_research_dropped(self, pipeline, live_store, dispatcher, mock_client):
        self._classify(pipeline, live_store, dispatcher, mock_client)
        mock_client.research_process.return_value = ResearchResponse(content="x")
        pipeline.trigger_research()
        live_store.select(5620)

        dispatcher.run_all()
        pipeline.drain()

        assert pipeline.result("research") is None
        assert pipeline.stage == PipelineStage.IDLE


class TestVisualTrack:

    def test_visual_analysis(self, pipeline, dispatcher, mock_client):
        mock_client.analyze_screenshot.return_value = "Dashboard shows a crash dump."

        assert pipeline.submit_visual_evidence(b"png", "image/png")
        assert pipeline.visual_stage == VisualStage.AWAITING_VISUAL
        dispatcher.run_all()
        pipeline.drain()

        mock_client.analyze_screenshot.assert_called_once_with(b"png", "image/png")
        assert pipeline.visual_stage == VisualStage.VISUAL_DONE
        assert pipeline.visual_result.content == "Dashboard shows a crash dump."

    def test_visual_not_gated_by_selection(self, pipeline, live_store, dispatcher, mock_client):
        mock_client.analyze_screenshot.return_value = "ok"
        live_store.select(1337)
        pipeline.submit_visual_evidence(b"png", "image/png")
        live_store.select(5620)
        live_store.deselect()

        dispatcher.run_all()
        pipeline.drain()

        assert pipeline.visual_stage == VisualStage.VISUAL_DONE
        assert pipeline.visual_result.content == "ok"

    def test_visual_result_survives_selection_change(self, pipeline, live_store, dispatcher, mock_client):
        mock_client.analyze_screenshot.return_value = "ok"
        pipeline.submit_visual_evidence(b"png", "image/png")
        dispatcher.run_all()
        pipeline.drain()

        live_store.select(1337)

        assert pipeline.visual_stage == VisualStage.VISUAL_DONE
        assert pipeline.visual_result.content == "ok"

    def test_visual_failure_uses_fixed_error(self, pipeline, dispatcher, mock_client):
        mock_client.analyze_screenshot.side_effect = OSError("boom")
        pipeline.submit_visual_evidence(b"png", "image/png")
        dispatcher.run_all()
        pipeline.drain()
        assert pipeline.visual_result.content.startswith("Error analyzing image")

    def test_duplicate_and_empty_submissions_ignored(self, pipeline, dispatcher):
        assert not pipeline.submit_visual_evidence(b"", "image/png")
        assert pipeline.submit_visual_evidence(b"png", "image/png")
        assert not pipeline.submit_visual_evidence(b"png2", "image/png")
        assert len(dispatcher.jobs) == 1

    def test_clear_makes_outstanding_result_stale(self, pipeline, dispatcher, mock_client):
        mock_client.analyze_screenshot.return_value = "late"
        pipeline.submit_visual_evidence(b"png", "image/png")
        pipeline.clear_visual()
        dispatcher.run_all()
        pipeline.drain()
        assert pipeline.visual_stage == VisualStage.VISUAL_IDLE
        assert pipeline.visual_result is None


def test_audit_order_follows_observation_not_completion(pipeline, live_store, dispatcher, mock_client, audit_log):
    """Results are logged when drained, after any command observed earlier."""
    mock_client.classify_process.return_value = verdict()
    mock_client.analyze_screenshot.return_value = "ok"
    live_store.select(1337)
    pipeline.trigger_analysis()
    pipeline.submit_visual_evidence(b"png", "image/png")

    # visual completes first, classification second
    dispatcher.run(1)
    dispatcher.run(0)
    live_store.terminate(5620)
    pipeline.drain()

    messages = [e.message for e in audit_log.entries()]
    assert messages == [
        "TerminateProcess(PID=5620) invoked.",
        "Process PID 5620 terminated successfully.",
        "Visual evidence analysis complete.",
        "PID 1337 (updater_svc.exe) classified MALICIOUS: Kill.",
    ]


def test_thread_dispatcher_end_to_end(live_store, mock_client):
    mock_client.classify_process.return_value = verdict("SAFE", 0.05, "Ignore")
    pipeline = RiskClassifierPipeline(live_store, mock_client, dispatcher=thread_dispatcher)
    live_store.select(5620)
    pipeline.trigger_analysis()

    deadline = time.time() + 5
    while pipeline.stage != PipelineStage.CLASSIFIED and time.time() < deadline:
        pipeline.drain()
        time.sleep(0.01)

    assert pipeline.stage == PipelineStage.CLASSIFIED
    assert live_store.get(5620).risk_level == RiskLevel.SAFE


def test_rerun_drops_previous_verdict_until_new_one_lands(pipeline, live_store, dispatcher, mock_client):
    mock_client.classify_process.return_value = verdict()
    mock_client.research_process.return_value = ResearchResponse(content="miner")
    live_store.select(1337)
    pipeline.trigger_analysis()
    dispatcher.run_all()
    pipeline.drain()
    pipeline.trigger_research()
    dispatcher.run_all()
    pipeline.drain()

    mock_client.classify_process.return_value = verdict("SUSPICIOUS", 0.5, "Monitor")
    assert pipeline.trigger_analysis()

    assert pipeline.stage == PipelineStage.AWAITING_CLASSIFICATION
    assert pipeline.result("classification") is None
    assert pipeline.result("research") is None
    assert pipeline.result("heuristic") is not None

    dispatcher.run_all()
    pipeline.drain()
    assert pipeline.result("classification").classification == RiskLevel.SUSPICIOUS
