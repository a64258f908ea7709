from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Literal, Protocol

ReviewSignal = Literal["approved", "hold", "reviewing"]
RoundMode = Literal["parallel_remediation", "merge_synthesis", "final_decision"]


def round_mode(round_no: int) -> RoundMode:
    if round_no <= 1:
        return "parallel_remediation"
    if round_no == 2:
        return "merge_synthesis"
    return "final_decision"


class ReviewSignalClassifier(Protocol):
    def classify(self, text: str) -> ReviewSignal: ...

    def is_deferrable_hold(self, text: str) -> bool: ...


def _compile(pattern: str) -> re.Pattern[str]:
    return re.compile(pattern, re.IGNORECASE)


DEFERRAL_PATTERN = (
    r"mvp|범위\s*초과|실환경|프로덕션|production|post[-\s]?merge|post[-\s]?release"
    r"|안정화\s*단계|stabilization|모니터링|monitoring|\bsla\b|체크리스트|checklist|문서화"
    r"|runbook|후속\s*(?:개선|처리|모니터링)|defer|deferred|later\s*phase|다음\s*단계|배포\s*후"
)
HARD_BLOCK_PATTERN = (
    r"최종\s*승인\s*불가|배포\s*불가|절대\s*불가|즉시\s*중단|중단|반려"
    r"|cannot\s+(?:approve|ship|release)|must\s+fix\s+before|hard\s+blocker|critical\s+blocker"
    r"|\bp0\b|data\s+loss|security\s+incident|integrity\s+broken|audit\s*fail|build\s*fail"
    r"|무결성\s*(?:훼손|깨짐)|데이터\s*손실|보안\s*사고|치명"
)
AGREEMENT_PATTERN = (
    r"승인|approve|approved|동의|agree|agreed|lgtm|go\s+ahead|merge\s+approve"
    r"|병합\s*승인|전환\s*동의|조건부\s*승인"
)
APPROVAL_PATTERN = (
    r"승인|통과|문제없|진행.?가능|배포.?가능|approve|approved|lgtm|ship\s+it|go\s+ahead"
    r"|承認|批准|通过|可发布"
)
NO_RISK_PATTERN = (
    r"리스크\s*(?:없|없음|없습니다|없는|없이)|위험\s*(?:없|없음|없습니다|없는|없이)|문제\s*없|이슈\s*없"
    r"|no\s+risk|without\s+risk|risk[-\s]?free|no\s+issues?|no\s+blockers?"
    r"|リスク(?:は)?(?:ありません|なし|無し)|問題ありません|无风险|没有风险|無風險|无问题"
)
HOLD_PATTERN = (
    r"조건부|보완|수정|보류|리스크|미흡|미완|추가.?필요|재검토|중단|불가"
    r"|hold|revise|revision|changes?\s+requested|required|pending|risk|block|missing"
    r"|incomplete|not\s+ready|保留|修正|风险|补充|未完成|暂缓|差し戻し"
)


@dataclass(slots=True)
class SignalPatterns:
    """Keyword families; each one is a single case-insensitive regex."""

    deferral: str = DEFERRAL_PATTERN
    hard_block: str = HARD_BLOCK_PATTERN
    agreement: str = AGREEMENT_PATTERN
    approval: str = APPROVAL_PATTERN
    no_risk: str = NO_RISK_PATTERN
    hold: str = HOLD_PATTERN


@dataclass(slots=True)
class KeywordSignalClassifier:
    patterns: SignalPatterns = field(default_factory=SignalPatterns)
    _compiled: dict[str, re.Pattern[str]] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._compiled = {
            "deferral": _compile(self.patterns.deferral),
            "hard_block": _compile(self.patterns.hard_block),
            "agreement": _compile(self.patterns.agreement),
            "approval": _compile(self.patterns.approval),
            "no_risk": _compile(self.patterns.no_risk),
            "hold": _compile(self.patterns.hold),
        }

    def _has(self, family: str, text: str) -> bool:
        return self._compiled[family].search(text) is not None

    def is_deferrable_hold(self, text: str) -> bool:
        cleaned = " ".join(text.split())
        if not cleaned:
            return False
        return self._has("deferral", cleaned) and not self._has("hard_block", cleaned)

    def classify(self, text: str) -> ReviewSignal:
        cleaned = " ".join(text.split())
        if not cleaned:
            return "reviewing"
        approval = self._has("approval", cleaned)
        agreement = self._has("agreement", cleaned)
        no_risk = self._has("no_risk", cleaned)
        deferral = self._has("deferral", cleaned)
        hard_block = self._has("hard_block", cleaned)

        if approval and no_risk:
            return "approved"
        if (approval or agreement) and deferral and not hard_block:
            return "approved"
        if self._has("hold", cleaned):
            return "hold"
        if approval or no_risk or agreement:
            return "approved"
        return "reviewing"
