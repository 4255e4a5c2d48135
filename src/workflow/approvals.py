"""Stage-gate workflow engine - Approval ledger.

Aggregates approver votes per stage attempt. Votes are scoped to the
attempt in which they were cast, so re-entering a stage (re-route or
reopen) starts a fresh ballot: the old votes are marked superseded and stay
in the audit trail.

The ledger only ever writes to the ``approvals`` list handed to it by the
state machine, inside the state machine's per-instance critical section.
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional

from .config import GateState, VoteStatus
from .errors import NotAnApproverError
from .models import ApprovalEntry, Stage, utcnow

logger = logging.getLogger(__name__)


class ApprovalLedger:
    """Records votes and resolves gate state with last-vote-wins semantics."""

    def record_vote(
        self,
        approvals: List[ApprovalEntry],
        stage: Stage,
        approver_id: str,
        status: VoteStatus,
        comments: str = "",
        attempt: int = 1,
        now: Optional[datetime] = None,
    ) -> ApprovalEntry:
        """Append a vote, superseding the approver's prior vote on this stage."""
        if approver_id not in stage.approvers:
            raise NotAnApproverError(stage.id, approver_id)

        for entry in approvals:
            if not entry.superseded and entry.stage_id == stage.id and entry.approver_id == approver_id:
                entry.superseded = True

        entry = ApprovalEntry(
            stage_id=stage.id,
            approver_id=approver_id,
            status=status,
            comments=comments,
            attempt=attempt,
            timestamp=now or utcnow(),
        )
        approvals.append(entry)
        logger.debug(
            "Recorded %s vote from %s on %s (attempt %d)",
            status.value, approver_id, stage.id, attempt,
        )
        return entry

    @staticmethod
    def retire_votes(approvals: List[ApprovalEntry], stage_id: str, attempt: int) -> int:
        """Supersede active votes cast on ``stage_id`` before ``attempt``.

        Called when a stage is re-entered. Returns the number of votes retired.
        """
        retired = 0
        for entry in approvals:
            if not entry.superseded and entry.stage_id == stage_id and entry.attempt < attempt:
                entry.superseded = True
                retired += 1
        return retired

    @staticmethod
    def latest_votes(
        approvals: List[ApprovalEntry], stage_id: str, attempt: int
    ) -> Dict[str, ApprovalEntry]:
        """Active (non-superseded) vote per approver for one stage attempt."""
        latest: Dict[str, ApprovalEntry] = {}
        for entry in approvals:
            if entry.stage_id == stage_id and entry.attempt == attempt and not entry.superseded:
                latest[entry.approver_id] = entry
        return latest

    def gate_state(
        self,
        stage: Stage,
        approvals: List[ApprovalEntry],
        require_all: bool,
        attempt: int,
    ) -> GateState:
        """Resolve the stage attempt to satisfied, pending, rejected or no_approvers."""
        if not stage.approvers:
            return GateState.NO_APPROVERS

        votes = {
            approver: entry
            for approver, entry in self.latest_votes(approvals, stage.id, attempt).items()
            if approver in stage.approvers
        }
        if any(v.status == VoteStatus.REJECTED for v in votes.values()):
            return GateState.REJECTED

        approved = {a for a, v in votes.items() if v.status == VoteStatus.APPROVED}
        if require_all:
            return GateState.SATISFIED if approved >= set(stage.approvers) else GateState.PENDING
        return GateState.SATISFIED if approved else GateState.PENDING

    def is_satisfied(
        self,
        stage: Stage,
        approvals: List[ApprovalEntry],
        require_all: bool,
        attempt: int,
    ) -> bool:
        return self.gate_state(stage, approvals, require_all, attempt) == GateState.SATISFIED

    def pending_approvers(
        self, stage: Stage, approvals: List[ApprovalEntry], attempt: int
    ) -> List[str]:
        """Declared approvers whose latest vote in this attempt is not ``approved``."""
        votes = self.latest_votes(approvals, stage.id, attempt)
        return sorted(
            a for a in stage.approvers
            if a not in votes or votes[a].status != VoteStatus.APPROVED
        )

    def rejected_by(
        self, stage: Stage, approvals: List[ApprovalEntry], attempt: int
    ) -> List[str]:
        votes = self.latest_votes(approvals, stage.id, attempt)
        return sorted(a for a, v in votes.items() if v.status == VoteStatus.REJECTED)
