from taskorch.review.classifier import (
    KeywordSignalClassifier,
    ReviewSignal,
    ReviewSignalClassifier,
    RoundMode,
    SignalPatterns,
    round_mode,
)
from taskorch.review.consensus import ReviewConsensus, ReviewOutcome
from taskorch.review.planning import PlanningMeeting, PlanningOutcome
from taskorch.review.speakers import AgentTurnRunner, ReviewSpeaker

__all__ = [
    "AgentTurnRunner",
    "KeywordSignalClassifier",
    "PlanningMeeting",
    "PlanningOutcome",
    "ReviewConsensus",
    "ReviewOutcome",
    "ReviewSignal",
    "ReviewSignalClassifier",
    "ReviewSpeaker",
    "RoundMode",
    "SignalPatterns",
    "round_mode",
]
