"""Shared constants and interfaces for the commission ticket engine.

All modules import from here to avoid circular dependencies.
"""

import os
from enum import Enum

# --- Engine Constants ---

HOUR = 3600

# Response windows (seconds) before the expiry sweep applies the no-response outcome
DEFAULT_CANCEL_WINDOW = 48 * HOUR
DEFAULT_REVISION_WINDOW = 48 * HOUR
DEFAULT_CHANGE_WINDOW = 48 * HOUR

# Counterparty gets this long to answer a dispute with counterproof
DEFAULT_COUNTER_WINDOW = 24 * HOUR

# Client review window for proof uploads (final / milestone)
DEFAULT_REVIEW_WINDOW = 48 * HOUR

# Background sweep cadence
DEFAULT_SWEEP_INTERVAL = 60

MIN_REASON_LENGTH = 10
MAX_COUNTERPROOF_IMAGES = 5

DEFAULT_LATE_PENALTY_PERCENT = 10
DEFAULT_GRACE_DAYS = 7
DAY = 24 * HOUR

# Currency is stored in minor units (integers); no fractional units ever leave the calculator
DEFAULT_CURRENCY = os.environ.get("COMMISSION_CURRENCY", "IDR")


# --- Parties & Contract ---

class Party(Enum):
    CLIENT = "client"
    ARTIST = "artist"

    @property
    def other(self) -> "Party":
        return Party.ARTIST if self is Party.CLIENT else Party.CLIENT


class ContractStatus(Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"


CONTRACT_TRANSITIONS = {
    ContractStatus.ACTIVE: {ContractStatus.COMPLETED, ContractStatus.CANCELLED, ContractStatus.DISPUTED},
    ContractStatus.DISPUTED: {ContractStatus.ACTIVE, ContractStatus.COMPLETED, ContractStatus.CANCELLED},
    ContractStatus.COMPLETED: set(),
    ContractStatus.CANCELLED: set(),
}

# Contract can still be worked on / negotiated
OPEN_CONTRACT_STATES = {ContractStatus.ACTIVE, ContractStatus.DISPUTED}


class MilestoneStatus(Enum):
    PENDING = "pending"
    SUBMITTED = "submitted"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


MILESTONE_TRANSITIONS = {
    MilestoneStatus.PENDING: {MilestoneStatus.SUBMITTED},
    MilestoneStatus.SUBMITTED: {MilestoneStatus.ACCEPTED, MilestoneStatus.REJECTED},
    # Resubmission, or a dispute ruling that overturns the rejection
    MilestoneStatus.REJECTED: {MilestoneStatus.SUBMITTED, MilestoneStatus.ACCEPTED},
    MilestoneStatus.ACCEPTED: set(),  # immutable once accepted
}


class FeeKind(Enum):
    FLAT = "flat"
    PERCENT = "percent"


# Contract terms a change set may overlay
CHANGE_SET_FIELDS = {"deadline_at", "description", "reference_images", "general_options", "subject_options"}

# Change-set keys that also need the matching entry in contract["changeable"]
GATED_CHANGE_FIELDS = {
    "deadline_at": "deadline",
    "general_options": "general_options",
    "subject_options": "subject_options",
}


# --- Ticket kinds ---

class TicketKind(Enum):
    CANCEL = "cancel"
    REVISION = "revision"
    CHANGE = "change"
    RESOLUTION = "resolution"
    UPLOAD = "upload"


class TargetType(Enum):
    """What a resolution ticket disputes."""
    CANCEL = "cancel"
    REVISION = "revision"
    CHANGE = "change"
    FINAL = "final"
    MILESTONE = "milestone"
    REVISION_UPLOAD = "revisionUpload"


class Decision(Enum):
    FAVOR_CLIENT = "favorClient"
    FAVOR_ARTIST = "favorArtist"

    @property
    def favored(self) -> Party:
        return Party.CLIENT if self is Decision.FAVOR_CLIENT else Party.ARTIST


class ExpiryPolicy(Enum):
    """What the sweep does when the party that owes a response stays silent."""
    AUTO_ACCEPT = "auto_accept"
    AUTO_REJECT = "auto_reject"
    ADMIN_REVIEW = "admin_review"


DEFAULT_CANCEL_EXPIRY = ExpiryPolicy.AUTO_ACCEPT
DEFAULT_REVISION_EXPIRY = ExpiryPolicy.AUTO_ACCEPT
DEFAULT_CHANGE_EXPIRY = ExpiryPolicy.AUTO_REJECT


# --- Ticket state machines ---

class CancelStatus(Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    FORCED_ACCEPTED = "forcedAccepted"
    DISPUTED = "disputed"


CANCEL_TRANSITIONS = {
    CancelStatus.PENDING: {
        CancelStatus.ACCEPTED, CancelStatus.REJECTED,
        CancelStatus.FORCED_ACCEPTED, CancelStatus.DISPUTED,
    },
    # Admin rulings can still flip these
    CancelStatus.DISPUTED: {CancelStatus.FORCED_ACCEPTED, CancelStatus.REJECTED},
    CancelStatus.REJECTED: {CancelStatus.FORCED_ACCEPTED},
    CancelStatus.ACCEPTED: {CancelStatus.REJECTED},
    CancelStatus.FORCED_ACCEPTED: {CancelStatus.REJECTED},
}


class RevisionStatus(Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    FORCED_ACCEPTED = "forcedAccepted"
    REJECTED = "rejected"
    PAID = "paid"
    DISPUTED = "disputed"
    CANCELLED = "cancelled"


REVISION_TRANSITIONS = {
    RevisionStatus.PENDING: {
        RevisionStatus.ACCEPTED, RevisionStatus.REJECTED,
        RevisionStatus.FORCED_ACCEPTED, RevisionStatus.DISPUTED,
        RevisionStatus.CANCELLED,
    },
    RevisionStatus.ACCEPTED: {RevisionStatus.PAID, RevisionStatus.REJECTED},
    RevisionStatus.FORCED_ACCEPTED: {RevisionStatus.PAID, RevisionStatus.REJECTED},
    RevisionStatus.DISPUTED: {RevisionStatus.FORCED_ACCEPTED, RevisionStatus.REJECTED},
    RevisionStatus.REJECTED: {RevisionStatus.FORCED_ACCEPTED},
    RevisionStatus.PAID: set(),
    RevisionStatus.CANCELLED: set(),
}


class ChangeStatus(Enum):
    PENDING_ARTIST = "pendingArtist"
    PENDING_CLIENT = "pendingClient"
    ACCEPTED_ARTIST = "acceptedArtist"
    REJECTED_ARTIST = "rejectedArtist"
    REJECTED_CLIENT = "rejectedClient"
    FORCED_ACCEPTED_CLIENT = "forcedAcceptedClient"
    FORCED_ACCEPTED_ARTIST = "forcedAcceptedArtist"
    PAID = "paid"
    CANCELLED = "cancelled"


CHANGE_TRANSITIONS = {
    ChangeStatus.PENDING_ARTIST: {
        ChangeStatus.ACCEPTED_ARTIST, ChangeStatus.PENDING_CLIENT,
        ChangeStatus.REJECTED_ARTIST, ChangeStatus.FORCED_ACCEPTED_ARTIST,
        ChangeStatus.CANCELLED,
    },
    ChangeStatus.PENDING_CLIENT: {
        ChangeStatus.PAID, ChangeStatus.REJECTED_CLIENT,
        ChangeStatus.FORCED_ACCEPTED_CLIENT, ChangeStatus.CANCELLED,
    },
    # Fee still owed; the change set lands when it is paid
    ChangeStatus.FORCED_ACCEPTED_CLIENT: {ChangeStatus.PAID},
    ChangeStatus.REJECTED_ARTIST: {ChangeStatus.FORCED_ACCEPTED_ARTIST},
    ChangeStatus.REJECTED_CLIENT: {ChangeStatus.FORCED_ACCEPTED_ARTIST},
    ChangeStatus.ACCEPTED_ARTIST: set(),
    ChangeStatus.FORCED_ACCEPTED_ARTIST: set(),
    ChangeStatus.PAID: set(),
    ChangeStatus.CANCELLED: set(),
}


class ResolutionStatus(Enum):
    OPEN = "open"
    AWAITING_REVIEW = "awaitingReview"
    RESOLVED = "resolved"
    CANCELLED = "cancelled"


RESOLUTION_TRANSITIONS = {
    ResolutionStatus.OPEN: {ResolutionStatus.AWAITING_REVIEW, ResolutionStatus.CANCELLED},
    ResolutionStatus.AWAITING_REVIEW: {ResolutionStatus.RESOLVED, ResolutionStatus.CANCELLED},
    ResolutionStatus.RESOLVED: set(),
    ResolutionStatus.CANCELLED: set(),
}

ACTIVE_RESOLUTION_STATES = {ResolutionStatus.OPEN, ResolutionStatus.AWAITING_REVIEW}


class UploadKind(Enum):
    FINAL = "final"
    MILESTONE = "milestone"
    # Delivers an accepted or paid revision ticket
    REVISION = "revision"


class UploadStatus(Enum):
    SUBMITTED = "submitted"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    FORCED_ACCEPTED = "forcedAccepted"


UPLOAD_TRANSITIONS = {
    UploadStatus.SUBMITTED: {UploadStatus.ACCEPTED, UploadStatus.REJECTED, UploadStatus.FORCED_ACCEPTED},
    # A dispute can overturn the client's rejection
    UploadStatus.REJECTED: {UploadStatus.FORCED_ACCEPTED},
    UploadStatus.ACCEPTED: set(),
    UploadStatus.FORCED_ACCEPTED: set(),
}

ACCEPTED_UPLOAD_STATES = {UploadStatus.ACCEPTED, UploadStatus.FORCED_ACCEPTED}


# --- Escrow intents ---

class IntentType(Enum):
    REVISION_FEE = "revision_fee"  # client -> escrow
    CHANGE_FEE = "change_fee"      # client -> escrow
    RELEASE = "release"            # escrow -> artist
    REFUND = "refund"              # escrow -> client


class IntentStatus(Enum):
    PENDING = "pending"        # recorded, not yet sent to the gateway
    ISSUED = "issued"          # gateway accepted, waiting for confirmation
    CONFIRMED = "confirmed"
    STALE = "stale"            # confirmed after being superseded; refund out-of-band


# --- Errors ---

class EngineError(Exception):
    """Base for every error the ticket engine surfaces."""

    retryable = False
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFound(EngineError):
    status_code = 404


class PreconditionFailed(EngineError):
    """Wrong contract/ticket status, wrong actor, or past the deadline."""

    status_code = 409

    def __init__(self, message: str, forbidden: bool = False):
        super().__init__(message)
        self.forbidden = forbidden
        if forbidden:
            self.status_code = 403


class ValidationFailed(EngineError):
    """Missing or malformed input (short reason, bad fee, bad progress)."""

    status_code = 400


class ConcurrencyConflict(EngineError):
    """Contract changed since it was read. Retry from fresh state."""

    retryable = True
    status_code = 409


class GatewayFailure(EngineError):
    """Escrow gateway refused or failed to create an intent."""

    retryable = True
    status_code = 502


class SchedulerSkip(EngineError):
    """Ticket already processed by an earlier sweep. Never surfaced."""
