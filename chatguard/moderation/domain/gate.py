"""Send-path gate: decide whether an outgoing chat message may be delivered."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from chatguard.moderation.domain.classifier import CLEAN_VERDICT, MessageClassifier, Verdict
from chatguard.moderation.domain.lexicon import LexiconStore
from chatguard.moderation.domain.sanctions import SanctionDecision, SanctionsService
from chatguard.moderation.domain.violations import MessageViolation, ViolationService
from chatguard.obs import metrics
from chatguard.obs.logging import bind_context, reset_context

logger = logging.getLogger(__name__)

BLOCKED_SENDER_NOTICE = "You are temporarily blocked from sending messages due to violations"
BLOCKED_MESSAGE_NOTICE = "Your message was blocked due to inappropriate content"
CONTENT_WARNING_NOTICE = "Warning: Your message contains inappropriate content"
WARNING_NOTICE = CONTENT_WARNING_NOTICE + ". Warning {count}/{max_warnings}"


class GateAction(str, Enum):
    ALLOW = "allow"
    WARN = "warn"
    BLOCK = "block"


@dataclass(frozen=True, slots=True)
class GateDecision:
    action: GateAction
    notice: str | None = None
    verdict: Verdict = CLEAN_VERDICT
    sanction: SanctionDecision | None = None
    violation: MessageViolation | None = None

    @property
    def deliver(self) -> bool:
        return self.action is not GateAction.BLOCK


class MessageGate:
    """Runs an outgoing message through block check, classification and sanctions.

    A warned message is still delivered; the caller shows ``notice`` to the sender.
    """

    def __init__(
        self,
        *,
        lexicon: LexiconStore,
        classifier: MessageClassifier,
        sanctions: SanctionsService,
        violations: ViolationService,
    ) -> None:
        self._lexicon = lexicon
        self._classifier = classifier
        self._sanctions = sanctions
        self._violations = violations

    async def check(
        self,
        sender_id: str,
        receiver_id: str,
        message_id: str,
        text: str,
        *,
        now: datetime | None = None,
    ) -> GateDecision:
        tokens = bind_context(user_id=sender_id, message_id=message_id)
        try:
            decision = await self._check(sender_id, receiver_id, message_id, text, now)
        finally:
            reset_context(tokens)
        metrics.GATE_DECISIONS.labels(action=decision.action.value).inc()
        return decision

    async def _check(
        self,
        sender_id: str,
        receiver_id: str,
        message_id: str,
        text: str,
        now: datetime | None,
    ) -> GateDecision:
        if await self._sanctions.is_blocked(sender_id, now=now):
            return GateDecision(action=GateAction.BLOCK, notice=BLOCKED_SENDER_NOTICE)

        if not self._lexicon.subscribed:
            await self._lexicon.refresh()
        verdict = self._classifier.classify(text)
        if not verdict.has_violation():
            return GateDecision(action=GateAction.ALLOW, verdict=verdict)

        sanction = await self._sanctions.handle_violation(sender_id, message_id, now=now)
        if not sanction.allowed:
            return GateDecision(
                action=GateAction.BLOCK,
                notice=BLOCKED_MESSAGE_NOTICE,
                verdict=verdict,
                sanction=sanction,
            )

        violation = await self._violations.record(
            message_id=message_id,
            sender_id=sender_id,
            receiver_id=receiver_id,
            text=text,
            verdict=verdict,
            now=now,
        )
        if sanction.counted:
            notice = WARNING_NOTICE.format(count=sanction.warning_count, max_warnings=sanction.max_warnings)
        else:
            # Sanctions store failed open; the count is unknown.
            notice = CONTENT_WARNING_NOTICE
        logger.info(
            "message flagged",
            extra={
                "categories": [c.label for c in verdict.categories()],
                "warning_count": sanction.warning_count if sanction.counted else None,
                "sanction_error": sanction.error,
            },
        )
        return GateDecision(
            action=GateAction.WARN,
            notice=notice,
            verdict=verdict,
            sanction=sanction,
            violation=violation,
        )
