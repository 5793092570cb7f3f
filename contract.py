"""Contract builder and validator for the commission ticket engine.

Builds, validates, and amends contract aggregates. A contract is a plain dict
(stored as JSON) holding finance terms, the milestone list, the deadline and
the history of agreed terms. Amendments arrive as change sets that overlay
the latest terms and bump the terms version.
"""

import copy
import time

from protocol import (
    DAY, DEFAULT_CURRENCY, DEFAULT_GRACE_DAYS, DEFAULT_LATE_PENALTY_PERCENT,
    CHANGE_SET_FIELDS, GATED_CHANGE_FIELDS,
    ContractStatus, FeeKind, MilestoneStatus,
)


# --- Contract builder ---

def _grace_end(deadline_at, grace_days):
    if deadline_at is None:
        return None
    return deadline_at + grace_days * DAY


def build_milestones(milestones):
    """Turn a proposal's milestone list into tracked milestones.

    Accepts dicts with "percent" (and optionally "title" and "revision_policy")
    or bare integers.
    """
    out = []
    for i, m in enumerate(milestones or []):
        if not isinstance(m, dict):
            m = {"percent": m}
        out.append({
            "index": i,
            "title": m.get("title", f"Milestone {i + 1}"),
            "percent": m.get("percent"),
            "status": MilestoneStatus.PENDING.value,
            "revision_policy": m.get("revision_policy"),
            "revisions_done": 0,
        })
    return out


def build_contract(client_id, artist_id, total, **kwargs):
    """Build a contract aggregate from a proposal snapshot.

    Args:
        client_id: Identity of the paying party.
        artist_id: Identity of the party doing the work.
        total: Agreed price in currency minor units.
        **kwargs: Optional terms: deadline_at, grace_days, milestones,
            cancellation_fee ({"kind", "amount"}), late_penalty_percent,
            revision_policy, changeable, description, reference_images,
            general_options, subject_options, currency, now.

    Returns:
        Contract dict. Not yet validated; run validate_contract().
    """
    now = kwargs.get("now") or time.time()
    deadline_at = kwargs.get("deadline_at")
    grace_days = kwargs.get("grace_days", DEFAULT_GRACE_DAYS)
    milestones = build_milestones(kwargs.get("milestones"))

    fee = kwargs.get("cancellation_fee") or {"kind": FeeKind.FLAT.value, "amount": 0}

    terms = {
        "version": 1,
        "description": kwargs.get("description", ""),
        "reference_images": list(kwargs.get("reference_images") or []),
        "general_options": kwargs.get("general_options") or {},
        "subject_options": kwargs.get("subject_options") or {},
        "deadline_at": deadline_at,
        "created_at": now,
    }

    return {
        "client_id": client_id,
        "artist_id": artist_id,
        "status": ContractStatus.ACTIVE.value,
        "flow": "milestone" if milestones else "standard",
        "currency": kwargs.get("currency", DEFAULT_CURRENCY),
        "finance": {
            "base": total,
            "extra_fees": 0,
            "total": total,
        },
        "cancellation_fee": dict(fee),
        "late_penalty_percent": kwargs.get("late_penalty_percent", DEFAULT_LATE_PENALTY_PERCENT),
        "deadline_at": deadline_at,
        "grace_days": grace_days,
        "grace_ends_at": _grace_end(deadline_at, grace_days),
        "milestones": milestones,
        "terms": [terms],
        "version": 1,
        "lock_version": 0,
        # None means revisions are not offered at all
        "revision_policy": kwargs.get("revision_policy"),
        "revisions_done": 0,
        "changeable": list(kwargs.get("changeable") or []),
        "settlement": None,
        "created_at": now,
    }


# --- Validator ---

def _validate_revision_policy(policy, where, errors):
    if policy is None:
        return
    if not isinstance(policy, dict):
        errors.append(f"{where} must be a dict")
        return
    free = policy.get("free", 0)
    if not isinstance(free, int) or free < 0:
        errors.append(f"{where}.free must be an int >= 0")
    fee = policy.get("fee", 0)
    if not isinstance(fee, int) or fee < 0:
        errors.append(f"{where}.fee must be an int >= 0")


def validate_contract(contract):
    """Validate a contract dict.

    Returns:
        (True, []) if valid, (False, [errors]) otherwise.
    """
    errors = []

    if not isinstance(contract, dict):
        return False, ["contract is not a dict"]

    if not contract.get("client_id"):
        errors.append("client_id is required")
    if not contract.get("artist_id"):
        errors.append("artist_id is required")
    if contract.get("client_id") and contract.get("client_id") == contract.get("artist_id"):
        errors.append("client and artist must be different parties")

    # Finance
    finance = contract.get("finance", {})
    if not isinstance(finance, dict):
        errors.append("finance must be a dict")
        finance = {}
    total = finance.get("total")
    if not isinstance(total, int) or isinstance(total, bool) or total < 0:
        errors.append("finance.total must be a non-negative int (minor units)")

    # Cancellation fee policy
    fee = contract.get("cancellation_fee")
    if not isinstance(fee, dict):
        errors.append("cancellation_fee must be a dict")
    else:
        kind = fee.get("kind")
        amount = fee.get("amount")
        if kind not in (FeeKind.FLAT.value, FeeKind.PERCENT.value):
            errors.append(f"cancellation_fee.kind must be 'flat' or 'percent', got '{kind}'")
        if not isinstance(amount, (int, float)) or isinstance(amount, bool) or amount < 0:
            errors.append("cancellation_fee.amount must be a number >= 0")
        elif kind == FeeKind.PERCENT.value and amount > 100:
            errors.append("cancellation_fee.amount must be between 0 and 100 for percent fees")

    penalty = contract.get("late_penalty_percent", 0)
    if not isinstance(penalty, (int, float)) or not 0 <= penalty <= 100:
        errors.append("late_penalty_percent must be between 0 and 100")

    # Milestones
    milestones = contract.get("milestones", [])
    if not isinstance(milestones, list):
        errors.append("milestones must be a list")
        milestones = []
    if milestones:
        percents = []
        for i, m in enumerate(milestones):
            if m.get("index") != i:
                errors.append(f"milestones[{i}].index must be {i}")
            p = m.get("percent")
            if not isinstance(p, int) or isinstance(p, bool) or p <= 0:
                errors.append(f"milestones[{i}].percent must be a positive int")
            else:
                percents.append(p)
            _validate_revision_policy(m.get("revision_policy"), f"milestones[{i}].revision_policy", errors)
        if len(percents) == len(milestones) and sum(percents) != 100:
            errors.append(f"milestone percents must sum to 100, got {sum(percents)}")

    _validate_revision_policy(contract.get("revision_policy"), "revision_policy", errors)

    deadline = contract.get("deadline_at")
    if deadline is not None and not isinstance(deadline, (int, float)):
        errors.append("deadline_at must be an epoch timestamp")

    changeable = contract.get("changeable", [])
    if not isinstance(changeable, list):
        errors.append("changeable must be a list")
    else:
        for c in changeable:
            if c not in GATED_CHANGE_FIELDS.values():
                errors.append(f"changeable entry '{c}' is not a changeable term")

    terms = contract.get("terms")
    if not isinstance(terms, list) or not terms:
        errors.append("terms must be a non-empty list")

    return (len(errors) == 0, errors)


# --- Terms & change sets ---

def current_terms(contract):
    """Latest agreed terms (the last entry of the history)."""
    return contract["terms"][-1]


def validate_change_set(contract, change_set):
    """Check a change set against the contract's changeable terms.

    Returns:
        (True, []) if the change set may be proposed, (False, [errors]) otherwise.
    """
    errors = []
    if not isinstance(change_set, dict) or not change_set:
        return False, ["change set must be a non-empty dict"]

    allowed = set(contract.get("changeable", []))
    for key, value in change_set.items():
        if key not in CHANGE_SET_FIELDS:
            errors.append(f"'{key}' is not a changeable term")
            continue
        gate = GATED_CHANGE_FIELDS.get(key)
        if gate and gate not in allowed:
            errors.append(f"{gate} changes are not allowed for this contract")

        if key == "deadline_at":
            if not isinstance(value, (int, float)) or isinstance(value, bool):
                errors.append("deadline_at must be an epoch timestamp")
        elif key == "description":
            if not isinstance(value, str):
                errors.append("description must be a string")
        elif key == "reference_images":
            if not isinstance(value, list) or not all(isinstance(r, str) for r in value):
                errors.append("reference_images must be a list of upload refs")
        elif not isinstance(value, dict):
            errors.append(f"{key} must be a dict")

    return (len(errors) == 0, errors)


def apply_change_set(contract, change_set, now=None):
    """Overlay a change set onto the contract in place.

    Appends a new terms entry (copy of the latest plus the changes), moves the
    deadline and grace end if the deadline changed, and bumps the terms
    version. Returns the new version.
    """
    now = now or time.time()
    terms = copy.deepcopy(current_terms(contract))
    for key, value in change_set.items():
        terms[key] = copy.deepcopy(value)

    version = contract["version"] + 1
    terms["version"] = version
    terms["created_at"] = now
    contract["terms"].append(terms)
    contract["version"] = version

    if "deadline_at" in change_set:
        contract["deadline_at"] = change_set["deadline_at"]
        contract["grace_ends_at"] = _grace_end(change_set["deadline_at"], contract.get("grace_days", DEFAULT_GRACE_DAYS))

    return version


# --- Milestones ---

def milestone_in_range(contract, idx):
    return isinstance(idx, int) and not isinstance(idx, bool) and 0 <= idx < len(contract.get("milestones", []))


def default_work_progress(contract):
    """Work-progress estimate from milestones: sum of accepted percents.

    Standard-flow contracts have nothing to go on and report 0.
    """
    return sum(
        m["percent"] for m in contract.get("milestones", [])
        if m["status"] == MilestoneStatus.ACCEPTED.value
    )


def is_late(contract, now):
    deadline = contract.get("deadline_at")
    return deadline is not None and now > deadline


def revision_terms(contract, milestone_idx=None):
    """Decide whether another revision is allowed and what it costs.

    Milestone revisions use the milestone's own policy when it has one,
    otherwise the contract-wide policy applies.

    Returns:
        (allowed, fee_or_None, message)
    """
    policy = contract.get("revision_policy")
    done = contract.get("revisions_done", 0)
    if milestone_idx is not None:
        m = contract["milestones"][milestone_idx]
        if m.get("revision_policy") is not None:
            policy = m["revision_policy"]
            done = m.get("revisions_done", 0)

    if policy is None:
        return False, None, "This contract does not allow revisions"

    free = policy.get("free", 0)
    if policy.get("limit", True) and done >= free:
        if not policy.get("extra_allowed", False):
            return False, None, f"Revision limit reached ({free})"
        fee = policy.get("fee", 0)
        return True, (fee if fee > 0 else None), ""

    return True, None, ""


def count_revision(contract, milestone_idx=None):
    """Record one more accepted revision against the policy it was charged to."""
    if milestone_idx is not None:
        m = contract["milestones"][milestone_idx]
        if m.get("revision_policy") is not None:
            m["revisions_done"] = m.get("revisions_done", 0) + 1
            return
    contract["revisions_done"] = contract.get("revisions_done", 0) + 1
