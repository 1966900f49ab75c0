import base64
import json
import logging
from typing import List, Optional, Tuple

import requests
from pydantic import AliasChoices, BaseModel, Field, ValidationError, field_validator

from sentinel.config import Settings
from sentinel.sysmon.models import ProcessRecord, RiskLevel
from sentinel.threat_detector.rate_limiter import RequestRateLimiter

ANALYSIS_UNAVAILABLE = "analysis unavailable"
MANUAL_INSPECTION = "manual inspection"
RESEARCH_UNAVAILABLE = "Unable to connect to Global Intelligence Network."
RESEARCH_EMPTY = "No intelligence gathered."
VISUAL_UNAVAILABLE = "Error analyzing image. Please ensure the image is valid and the service is available."
VISUAL_EMPTY = "Analysis complete, but no textual output returned."

CLASSIFICATION_PROMPT = """You are the AI Supervisor of a security-focused task manager.
Analyze the following process telemetry (feature vector) for potential security threats.

Context:
- Entropy above 7.0 indicates packed code, common in malware.
- Unsigned binaries in system folders are suspicious.
- Living-off-the-land binaries (powershell, cmd) started by unusual parents are suspicious.
- High resource usage together with an unsigned, high-entropy image is malicious.

Process data:
{payload}

Return JSON with a risk score (0-1), a classification (SAFE, SUSPICIOUS, MALICIOUS),
a concise reasoning string and a recommended action (Kill, Monitor, Ignore)."""

RESEARCH_PROMPT = """Research the Windows process named "{name}".
1. Identify the software it belongs to (vendor / product).
2. Describe its typical function.
3. State whether it is commonly impersonated by malware.

Provide a concise summary suitable for a security dashboard."""

VISUAL_PROMPT = (
    "You are a Level 3 security analyst. Analyze this screenshot. It may contain system logs, "
    "code snippets, dashboard metrics or error messages. Summarize the technical content, identify "
    "any visible errors and highlight potential security risks or anomalies. Be concise and professional."
)

CLASSIFICATION_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "riskScore": {"type": "NUMBER"},
        "classification": {"type": "STRING", "enum": [level.value for level in RiskLevel]},
        "reasoning": {"type": "STRING"},
        "recommendedAction": {"type": "STRING"},
    },
    "required": ["riskScore", "classification", "reasoning", "recommendedAction"],
}


class ClassificationResponse(BaseModel):
    risk_score: float = Field(validation_alias=AliasChoices("risk_score", "riskScore"))
    classification: RiskLevel
    reasoning: str
    recommended_action: str = Field(validation_alias=AliasChoices("recommended_action", "recommendedAction"))
    available: bool = True

    @field_validator("risk_score")
    @classmethod
    def _clamp_score(cls, value: float) -> float:
        return min(1.0, max(0.0, value))

    @field_validator("classification", mode="before")
    @classmethod
    def _parse_classification(cls, value):
        return RiskLevel.parse(value)

    @classmethod
    def fallback(cls) -> "ClassificationResponse":
        return cls(
            risk_score=0.0,
            classification=RiskLevel.UNKNOWN,
            reasoning=ANALYSIS_UNAVAILABLE,
            recommended_action=MANUAL_INSPECTION,
            available=False,
        )


class ResearchResponse(BaseModel):
    content: str
    sources: List[Tuple[str, str]] = Field(default_factory=list)
    available: bool = True

    @classmethod
    def fallback(cls) -> "ResearchResponse":
        return cls(content=RESEARCH_UNAVAILABLE, sources=[], available=False)


class AISupervisorClient:
    """
    Client for the generative AI service used as an external threat analyst.

    Every public call makes a single attempt. Transport errors, error
    statuses and unparseable replies are logged and turned into the fixed
    fallback result; nothing is raised to the caller.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        analysis_model: str = "gemini-2.5-flash",
        visual_model: str = "gemini-2.5-pro",
        timeout: float = 30.0,
        rate_limiter: Optional[RequestRateLimiter] = None,
    ):
        self.__api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.analysis_model = analysis_model
        self.visual_model = visual_model
        self.timeout = timeout
        self.rate_limiter = rate_limiter or RequestRateLimiter()
        self.headers = {
            "accept": "application/json",
            "content-type": "application/json",
            "x-goog-api-key": api_key or "",
        }
        self.logger = logging.getLogger(__name__)

    @classmethod
    def from_settings(cls, settings: Settings) -> "AISupervisorClient":
        return cls(
            api_key=settings.api_key,
            base_url=settings.api_base_url,
            analysis_model=settings.analysis_model,
            visual_model=settings.visual_model,
            timeout=settings.request_timeout,
            rate_limiter=RequestRateLimiter(requests_per_minute=settings.requests_per_minute),
        )

    @property
    def has_api_key(self) -> bool:
        return bool(self.__api_key)

    # ---------------------------------------------------------- public calls

    def classify_process(self, process: ProcessRecord) -> ClassificationResponse:
        payload = json.dumps(process.to_payload(), indent=2)
        body = {
            "contents": [{"parts": [{"text": CLASSIFICATION_PROMPT.format(payload=payload)}]}],
            "generationConfig": {
                "responseMimeType": "application/json",
                "responseSchema": CLASSIFICATION_SCHEMA,
            },
        }
        result = self._make_request(self.analysis_model, body)
        if "error" in result:
            self.logger.error(f"Classification of PID {process.pid} failed: {result['error']}")
            return ClassificationResponse.fallback()

        text = self._response_text(result)
        if not text:
            self.logger.error(f"Classification of PID {process.pid} returned no content")
            return ClassificationResponse.fallback()

        try:
            return ClassificationResponse.model_validate(json.loads(text))
        except (ValueError, ValidationError) as e:
            # json.JSONDecodeError is a ValueError
            self.logger.error(f"Malformed classification for PID {process.pid}: {e}")
            return ClassificationResponse.fallback()

    def research_process(self, process_name: str) -> ResearchResponse:
        body = {
            "contents": [{"parts": [{"text": RESEARCH_PROMPT.format(name=process_name)}]}],
            "tools": [{"google_search": {}}],
        }
        result = self._make_request(self.analysis_model, body)
        if "error" in result:
            self.logger.error(f"Research on {process_name} failed: {result['error']}")
            return ResearchResponse.fallback()

        try:
            candidate = (result.get("candidates") or [{}])[0]
            chunks = (candidate.get("groundingMetadata") or {}).get("groundingChunks") or []
            sources = []
            for chunk in chunks:
                web = chunk.get("web")
                if web:
                    sources.append((web.get("title") or "Source", web.get("uri") or "#"))
        except (AttributeError, IndexError, TypeError) as e:
            self.logger.error(f"Malformed research reply for {process_name}: {e}")
            return ResearchResponse.fallback()

        return ResearchResponse(content=self._response_text(result) or RESEARCH_EMPTY, sources=sources)

    def analyze_screenshot(self, image: bytes, mime_type: str) -> str:
        body = {
            "contents": [{
                "parts": [
                    {"inline_data": {"mime_type": mime_type, "data": base64.b64encode(image).decode("ascii")}},
                    {"text": VISUAL_PROMPT},
                ]
            }]
        }
        result = self._make_request(self.visual_model, body)
        if "error" in result:
            self.logger.error(f"Visual analysis failed: {result['error']}")
            return VISUAL_UNAVAILABLE
        return self._response_text(result) or VISUAL_EMPTY

    # ------------------------------------------------------------- transport

    def _make_request(self, model: str, body: dict) -> dict:
        """Single POST to generateContent; failures come back as {"error": ...}."""
        if not self.has_api_key:
            self.logger.warning("GEMINI_API_KEY is not set, skipping AI request")
            return {"error": "Missing API key"}

        url = f"{self.base_url}/models/{model}:generateContent"
        self.rate_limiter.acquire()
        try:
            response = requests.post(url, headers=self.headers, json=body, timeout=self.timeout)

            if response.status_code == 429:
                self.logger.warning("AI service rate limit hit")
                return {"error": "Rate limited by AI service"}

            response.raise_for_status()
            data = response.json()

            if not isinstance(data, dict):
                return {"error": "Unexpected response body"}
            if "error" in data:
                self.logger.error(f"AI service error: {data['error']}")
                return {"error": f"AI service error: {data['error']}"}
            return data

        except requests.exceptions.Timeout:
            self.logger.error(f"Request timeout for {url}")
            return {"error": "Request timeout"}

        except requests.exceptions.ConnectionError as e:
            self.logger.error(f"Connection error: {e}")
            return {"error": f"Connection error: {e}"}

        except requests.RequestException as e:
            self.logger.error(f"Request error: {e}")
            return {"error": f"Error during request: {e}"}

        except ValueError as e:
            self.logger.error(f"Invalid JSON from AI service: {e}")
            return {"error": "Invalid JSON in response"}

    @staticmethod
    def _response_text(data: dict) -> Optional[str]:
        try:
            parts = data["candidates"][0]["content"]["parts"]
        except (KeyError, IndexError, TypeError):
            return None
        text = "".join(part.get("text", "") for part in parts if isinstance(part, dict))
        return text or None
