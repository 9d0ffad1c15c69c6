"""CRP/VCR record types.

A CRP (Change Request Prompt) is a question with enumerated options raised by
an agent; a VCR (Verified Change Response) is the human's answer. Both are
immutable once written and scoped to a run.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from ._ids import RunId
from ._time import _datetime_to_iso, _iso_to_datetime, _utcnow

FINGERPRINT_MODES = ("exact", "normalized")

_WHITESPACE = re.compile(r"\s+")


def question_fingerprint(question: str, mode: str = "exact") -> str:
    """Fingerprint a CRP question for standing-decision matching.

    ``exact`` hashes the question verbatim; ``normalized`` case-folds it and
    collapses runs of whitespace first.
    """
    if mode not in FINGERPRINT_MODES:
        raise ValueError(f"Unknown fingerprint mode: {mode!r}")
    text = question
    if mode == "normalized":
        text = _WHITESPACE.sub(" ", question).strip().casefold()
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:16]


@dataclass(frozen=True)
class CRPOption:
    """One selectable answer of a CRP."""

    id: str
    label: str = ""
    description: str = ""


@dataclass(frozen=True)
class CRP:
    """Change Request Prompt.

    Attributes:
        crp_id: Identifier, sequential per run (crp-001, crp-002, ...).
        run_id: Owning run.
        created_by: Agent that raised it.
        question: Free-text question.
        options: Enumerated options.
        fingerprint: Question fingerprint used for standing decisions.
        created_at: Creation timestamp.
        context: Optional extra context from the agent.
        auto_resolved_by: VCR id of the standing decision that answered this
            CRP without blocking, if any.
    """

    crp_id: str
    run_id: RunId
    created_by: str
    question: str
    options: Tuple[CRPOption, ...]
    fingerprint: str
    created_at: datetime = field(default_factory=_utcnow)
    context: Optional[str] = None
    auto_resolved_by: Optional[str] = None

    @property
    def option_ids(self) -> List[str]:
        return [option.id for option in self.options]


@dataclass(frozen=True)
class VCR:
    """Verified Change Response.

    Attributes:
        vcr_id: Identifier, sequential per run.
        crp_id: The CRP this answers.
        decision: Chosen option id.
        rationale: Why.
        additional_notes: Optional free text.
        applies_to_future: Apply this decision to later CRPs with the same
            question fingerprint in this run.
        created_at: Creation timestamp.
        auto_applied_from: Standing VCR this one was copied from.
    """

    vcr_id: str
    crp_id: str
    decision: str
    rationale: str = ""
    additional_notes: Optional[str] = None
    applies_to_future: bool = False
    created_at: datetime = field(default_factory=_utcnow)
    auto_applied_from: Optional[str] = None


# =============================================================================
# Serialization Functions
# =============================================================================


def crp_to_dict(crp: CRP) -> Dict[str, Any]:
    return {
        "crp_id": crp.crp_id,
        "run_id": crp.run_id,
        "created_by": crp.created_by,
        "question": crp.question,
        "options": [
            {"id": o.id, "label": o.label, "description": o.description} for o in crp.options
        ],
        "fingerprint": crp.fingerprint,
        "created_at": _datetime_to_iso(crp.created_at),
        "context": crp.context,
        "auto_resolved_by": crp.auto_resolved_by,
    }


def crp_from_dict(data: Dict[str, Any]) -> CRP:
    return CRP(
        crp_id=data["crp_id"],
        run_id=data.get("run_id", ""),
        created_by=data.get("created_by", ""),
        question=data.get("question", ""),
        options=tuple(
            CRPOption(
                id=o["id"],
                label=o.get("label", ""),
                description=o.get("description", ""),
            )
            for o in data.get("options", [])
        ),
        fingerprint=data.get("fingerprint", ""),
        created_at=_iso_to_datetime(data.get("created_at")) or _utcnow(),
        context=data.get("context"),
        auto_resolved_by=data.get("auto_resolved_by"),
    )


def vcr_to_dict(vcr: VCR) -> Dict[str, Any]:
    return {
        "vcr_id": vcr.vcr_id,
        "crp_id": vcr.crp_id,
        "decision": vcr.decision,
        "rationale": vcr.rationale,
        "additional_notes": vcr.additional_notes,
        "applies_to_future": vcr.applies_to_future,
        "created_at": _datetime_to_iso(vcr.created_at),
        "auto_applied_from": vcr.auto_applied_from,
    }


def vcr_from_dict(data: Dict[str, Any]) -> VCR:
    return VCR(
        vcr_id=data["vcr_id"],
        crp_id=data["crp_id"],
        decision=data.get("decision", ""),
        rationale=data.get("rationale", ""),
        additional_notes=data.get("additional_notes"),
        applies_to_future=bool(data.get("applies_to_future", False)),
        created_at=_iso_to_datetime(data.get("created_at")) or _utcnow(),
        auto_applied_from=data.get("auto_applied_from"),
    )
