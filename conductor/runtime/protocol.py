"""
protocol.py - CRP/VCR human checkpoint protocol.

An agent raises a CRP (a question with enumerated options) and the run
blocks in waiting_human until a human records a VCR choosing one option.
CRPs and VCRs are write-once files under the run directory; whether a CRP is
resolved is derived from the existence of a VCR for it.

A VCR submitted with ``applies_to_future`` becomes a standing decision: a
later CRP in the same run whose question fingerprint matches is answered
automatically and the run does not block.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from . import storage
from .errors import (
    AgentValidationError,
    InvalidDecisionError,
    NotFoundError,
    PreconditionFailedError,
)
from .events import EventStream
from .types import (
    CRP,
    FINGERPRINT_MODES,
    VCR,
    AwaitingHuman,
    CRPAutoResolved,
    CRPOption,
    CRPRaised,
    RunId,
    RunState,
    VCRRecorded,
    Working,
    question_fingerprint,
)

logger = logging.getLogger(__name__)

OptionLike = Union[CRPOption, Dict[str, Any]]


def _normalize_options(options: Iterable[OptionLike]) -> List[CRPOption]:
    normalized: List[CRPOption] = []
    for option in options:
        if isinstance(option, CRPOption):
            normalized.append(option)
        else:
            normalized.append(
                CRPOption(
                    id=str(option.get("id", "")),
                    label=option.get("label", ""),
                    description=option.get("description", ""),
                )
            )
    return normalized


class CRPProtocol:
    """Raises CRPs, records VCRs and applies standing decisions."""

    def __init__(
        self,
        state_dir: Path,
        events: Optional[EventStream] = None,
        fingerprint_mode: str = "exact",
    ) -> None:
        if fingerprint_mode not in FINGERPRINT_MODES:
            raise ValueError(f"Unknown fingerprint mode: {fingerprint_mode!r}")
        self.state_dir = Path(state_dir)
        self.events = events or EventStream()
        self.fingerprint_mode = fingerprint_mode

    def _load_run(self, run_id: RunId) -> RunState:
        state = storage.read_run_state(run_id, self.state_dir)
        if state is None:
            raise NotFoundError("run", run_id)
        return state

    # -------------------------------------------------------------------------
    # Raising
    # -------------------------------------------------------------------------

    def raise_crp(
        self,
        run_id: RunId,
        options: Iterable[OptionLike],
        question: str,
        created_by: str,
        context: Optional[str] = None,
        allow_standing: bool = True,
    ) -> CRP:
        """Raise a CRP for a run.

        If a standing decision matches (and ``allow_standing`` is set), the
        returned CRP has ``auto_resolved_by`` set and the run stays in its
        agent phase with the decision queued; otherwise the run moves to
        waiting_human.

        Raises:
            AgentValidationError: Empty question, no options or duplicate
                option ids.
            NotFoundError: The run does not exist.
            PreconditionFailedError: The run already has a pending CRP or is
                not in an agent phase.
        """
        crp_options = _normalize_options(options)
        if not question or not question.strip():
            raise AgentValidationError("CRP question must not be empty", {"run_id": run_id})
        if not crp_options:
            raise AgentValidationError("CRP needs at least one option", {"run_id": run_id})
        option_ids = [option.id for option in crp_options]
        if any(not option_id for option_id in option_ids) or len(set(option_ids)) != len(option_ids):
            raise AgentValidationError(
                "CRP option ids must be non-empty and unique",
                {"run_id": run_id, "option_ids": option_ids},
            )

        with storage.get_lock(run_id):
            state = self._load_run(run_id)
            if state.pending_crp:
                raise PreconditionFailedError(
                    f"Run {run_id} already has pending CRP {state.pending_crp}",
                    {"run_id": run_id, "pending_crp": state.pending_crp},
                )
            if not isinstance(state.cursor, Working):
                raise PreconditionFailedError(
                    f"Run {run_id} is {state.phase.value}; CRPs can only be raised from agent phases",
                    {"run_id": run_id, "phase": state.phase.value},
                )

            raised_in = state.cursor.phase
            fingerprint = question_fingerprint(question, self.fingerprint_mode)
            crp_id = storage.next_crp_id(run_id, self.state_dir)
            standing = None
            if allow_standing:
                standing = self.find_standing_decision(run_id, question, option_ids)

            if standing is not None:
                vcr = VCR(
                    vcr_id=storage.next_vcr_id(run_id, self.state_dir),
                    crp_id=crp_id,
                    decision=standing.decision,
                    rationale=standing.rationale,
                    additional_notes=standing.additional_notes,
                    auto_applied_from=standing.vcr_id,
                )
                crp = CRP(
                    crp_id=crp_id,
                    run_id=run_id,
                    created_by=created_by,
                    question=question,
                    options=tuple(crp_options),
                    fingerprint=fingerprint,
                    context=context,
                    auto_resolved_by=vcr.vcr_id,
                )
                storage.write_crp(crp, self.state_dir)
                storage.write_vcr(run_id, vcr, self.state_dir)

                state.cursor = Working(raised_in, resume_vcr=vcr.vcr_id)
                state.add_history(raised_in, f"crp_auto_resolved:{crp_id}")
                state.touch("crp_auto_resolved", created_by)
                storage.write_run_state(state, self.state_dir)

                logger.info(
                    "Auto-resolved %s for run %s with standing decision %s (%s)",
                    crp_id,
                    run_id,
                    standing.vcr_id,
                    standing.decision,
                )
                self.events.publish(
                    CRPAutoResolved(
                        run_id=run_id,
                        crp_id=crp_id,
                        vcr_id=vcr.vcr_id,
                        decision=vcr.decision,
                        standing_vcr=standing.vcr_id,
                    )
                )
                return crp

            crp = CRP(
                crp_id=crp_id,
                run_id=run_id,
                created_by=created_by,
                question=question,
                options=tuple(crp_options),
                fingerprint=fingerprint,
                context=context,
            )
            storage.write_crp(crp, self.state_dir)

            state.cursor = AwaitingHuman(crp_id=crp_id, raised_in=raised_in)
            state.add_history(raised_in, f"crp_raised:{crp_id}")
            state.touch("crp_raised", created_by)
            storage.write_run_state(state, self.state_dir)

        logger.info("Run %s waiting for human on %s (raised by %s)", run_id, crp_id, created_by)
        self.events.publish(CRPRaised(run_id=run_id, crp_id=crp_id, agent=created_by))
        return crp

    # -------------------------------------------------------------------------
    # Responding
    # -------------------------------------------------------------------------

    def submit_vcr(
        self,
        run_id: RunId,
        crp_id: str,
        decision: str,
        rationale: str,
        notes: Optional[str] = None,
        applies_to_future: bool = False,
    ) -> VCR:
        """Record the human decision for the run's pending CRP.

        On success the run returns to the phase that raised the CRP with the
        VCR queued for the next execution of that phase.

        Raises:
            NotFoundError: Missing run or CRP.
            PreconditionFailedError: The CRP already has a VCR or is not the
                run's pending CRP.
            InvalidDecisionError: ``decision`` is not one of the option ids.
        """
        with storage.get_lock(run_id):
            state = self._load_run(run_id)
            crp = storage.read_crp(run_id, crp_id, self.state_dir)
            if crp is None:
                raise NotFoundError("crp", crp_id)
            existing = self.get_vcr_for_crp(run_id, crp_id)
            if existing is not None:
                raise PreconditionFailedError(
                    f"{crp_id} already answered by {existing.vcr_id}",
                    {"run_id": run_id, "crp_id": crp_id, "vcr_id": existing.vcr_id},
                )
            if not isinstance(state.cursor, AwaitingHuman) or state.cursor.crp_id != crp_id:
                raise PreconditionFailedError(
                    f"{crp_id} is not the pending CRP of run {run_id}",
                    {"run_id": run_id, "crp_id": crp_id, "pending_crp": state.pending_crp},
                )
            if decision not in crp.option_ids:
                raise InvalidDecisionError("decision", decision, crp.option_ids)

            vcr = VCR(
                vcr_id=storage.next_vcr_id(run_id, self.state_dir),
                crp_id=crp_id,
                decision=decision,
                rationale=rationale,
                additional_notes=notes,
                applies_to_future=applies_to_future,
            )
            storage.write_vcr(run_id, vcr, self.state_dir)

            raised_in = state.cursor.raised_in
            state.cursor = Working(raised_in, resume_vcr=vcr.vcr_id)
            state.add_history(raised_in, f"vcr_recorded:{vcr.vcr_id}")
            state.touch("vcr_recorded")
            storage.write_run_state(state, self.state_dir)

        logger.info("Recorded %s for %s on run %s: %s", vcr.vcr_id, crp_id, run_id, decision)
        self.events.publish(
            VCRRecorded(
                run_id=run_id,
                crp_id=crp_id,
                vcr_id=vcr.vcr_id,
                decision=decision,
                resume_phase=raised_in,
            )
        )
        return vcr

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_crp(self, run_id: RunId, crp_id: str) -> CRP:
        crp = storage.read_crp(run_id, crp_id, self.state_dir)
        if crp is None:
            raise NotFoundError("crp", crp_id)
        return crp

    def list_crps(self, run_id: RunId) -> List[CRP]:
        self._load_run(run_id)
        return storage.list_crps(run_id, self.state_dir)

    def get_vcr(self, run_id: RunId, vcr_id: str) -> VCR:
        vcr = storage.read_vcr(run_id, vcr_id, self.state_dir)
        if vcr is None:
            raise NotFoundError("vcr", vcr_id)
        return vcr

    def list_vcrs(self, run_id: RunId) -> List[VCR]:
        self._load_run(run_id)
        return storage.list_vcrs(run_id, self.state_dir)

    def get_vcr_for_crp(self, run_id: RunId, crp_id: str) -> Optional[VCR]:
        for vcr in storage.list_vcrs(run_id, self.state_dir):
            if vcr.crp_id == crp_id:
                return vcr
        return None

    def get_pending_crp(self, run_id: RunId) -> Optional[CRP]:
        state = self._load_run(run_id)
        if state.pending_crp is None:
            return None
        return storage.read_crp(run_id, state.pending_crp, self.state_dir)

    def find_standing_decision(
        self,
        run_id: RunId,
        question: str,
        option_ids: Optional[Iterable[str]] = None,
    ) -> Optional[VCR]:
        """Latest standing VCR whose CRP asked the same question.

        Questions are compared by fingerprint under the configured mode. When
        ``option_ids`` is given the standing decision must be one of them.
        """
        fingerprint = question_fingerprint(question, self.fingerprint_mode)
        allowed = set(option_ids) if option_ids is not None else None
        for vcr in reversed(storage.list_vcrs(run_id, self.state_dir)):
            if not vcr.applies_to_future:
                continue
            crp = storage.read_crp(run_id, vcr.crp_id, self.state_dir)
            if crp is None:
                continue
            if question_fingerprint(crp.question, self.fingerprint_mode) != fingerprint:
                continue
            if allowed is not None and vcr.decision not in allowed:
                continue
            return vcr
        return None
