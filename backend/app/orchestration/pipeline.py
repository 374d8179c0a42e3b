import asyncio
import logging
from typing import List, Optional, Tuple

from ..config import ModerationConfig
from ..core.exceptions import ModerationInputError
from ..models.safety import Finding, Verdict, VerdictMetadata, Violation
from ..policies.taxonomy import (
    DEFAULT_BANDS,
    ScoreBands,
    advisory_violation,
    contact_violation,
    map_finding,
)
from .classify import ClassifierAdapter, ClassifierResult, Unavailable
from .scrubber import redact_contact_info

logger = logging.getLogger(__name__)


def validate_text(text: str, config: ModerationConfig) -> None:
    if text is None or not str(text).strip():
        raise ModerationInputError("Message text is empty")
    if len(text) > config.max_message_length:
        raise ModerationInputError(
            f"Message text exceeds {config.max_message_length} characters"
        )


class ModerationPipeline:
    """Redaction plus both classifiers, merged into one Verdict.

    Never touches persisted state; collaborators are injected so tests can
    swap in deterministic fakes.
    """

    def __init__(
        self,
        rule_classifier: Optional[ClassifierAdapter] = None,
        ml_classifier: Optional[ClassifierAdapter] = None,
        bands: ScoreBands = DEFAULT_BANDS,
    ):
        self.rule_classifier = rule_classifier
        self.ml_classifier = ml_classifier
        self.bands = bands

    async def _consult(
        self, adapter: ClassifierAdapter, text: str, config: ModerationConfig
    ) -> ClassifierResult:
        source = getattr(adapter, "source", type(adapter).__name__)
        try:
            return await asyncio.wait_for(
                adapter.classify(text, config), timeout=config.classifier_timeout_s
            )
        except asyncio.TimeoutError:
            logger.warning("%s classifier exceeded %ss; continuing without it", source, config.classifier_timeout_s)
            return Unavailable(source, "timeout")
        except Exception as e:
            logger.exception("%s classifier failed unexpectedly: %s", source, e)
            return Unavailable(source, "error")

    async def moderate(self, text: str, config: ModerationConfig) -> Verdict:
        validate_text(text, config)

        # 1) contact redaction always applies
        processed_text, spans = redact_contact_info(text)
        violations: List[Violation] = [contact_violation(s) for s in spans]

        # 2/3) external classifiers, concurrently, each bounded by the timeout
        run_rule = bool(
            config.enable_external_classifiers and self.rule_classifier and config.rule_based_categories
        )
        run_ml = bool(config.enable_external_classifiers and self.ml_classifier and config.ml_models)

        pending = []
        if run_rule:
            pending.append(self._consult(self.rule_classifier, text, config))
        if run_ml:
            pending.append(self._consult(self.ml_classifier, text, config))
        results = list(await asyncio.gather(*pending)) if pending else []

        rule_result = results.pop(0) if run_rule else None
        ml_result = results.pop(0) if run_ml else None

        classifiers_used = False
        request_ids: List[str] = []
        confidence = 1.0

        if rule_result is not None:
            if isinstance(rule_result, Unavailable):
                violations.append(advisory_violation(rule_result.source, rule_result.reason))
            else:
                classifiers_used = True
                request_ids.extend(f.request_id for f in rule_result if f.request_id)
                violations.extend(map_finding(f, self.bands) for f in rule_result)

        if ml_result is not None:
            if isinstance(ml_result, Unavailable):
                violations.append(advisory_violation(ml_result.source, ml_result.reason))
            else:
                classifiers_used = True
                request_ids.extend(f.request_id for f in ml_result if f.request_id)
                kept, confidence = self._screen_ml(ml_result, config.ml_confidence_threshold)
                violations.extend(map_finding(f, self.bands) for f in kept)

        # 5) safe iff nothing High/Critical or blocking
        safe = not any(v.is_blocking for v in violations)

        return Verdict(
            safe=safe,
            violations=violations,
            processed_text=processed_text,
            confidence=confidence,
            redactions=spans,
            metadata=VerdictMetadata(
                classifiers_used=classifiers_used,
                request_id=request_ids[0] if request_ids else None,
            ),
        )

    @staticmethod
    def _screen_ml(findings: List[Finding], threshold: float) -> Tuple[List[Finding], float]:
        """Drop scores below the threshold; confidence is 1 - the highest score."""
        scores = [f.score for f in findings if f.score is not None]
        confidence = 1.0 - max(scores) if scores else 1.0
        kept = [f for f in findings if f.score is not None and f.score >= threshold]
        return kept, max(0.0, min(1.0, confidence))
