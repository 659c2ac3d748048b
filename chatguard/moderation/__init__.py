"""Message moderation: lexicon matching, classification and progressive sanctions."""

from chatguard.moderation.domain.container import ModerationContainer, build_container
from chatguard.moderation.domain.gate import GateAction, GateDecision, MessageGate

__all__ = ["ModerationContainer", "build_container", "GateAction", "GateDecision", "MessageGate"]
