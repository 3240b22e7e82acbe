"""Data models for the batch review core."""

from __future__ import annotations

import enum

from pydantic import BaseModel, Field


class Severity(str, enum.Enum):
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"
    APPROVED = "APPROVED"

    # Tokens are accepted case-insensitively ("critical", "High", ...)
    @classmethod
    def _missing_(cls, value: object):
        if isinstance(value, str):
            upper = value.strip().upper()
            for member in cls:
                if member.value == upper:
                    return member
        return None

    @property
    def priority(self) -> int:
        return SEVERITY_PRIORITY[self]


SEVERITY_PRIORITY: dict[Severity, int] = {
    Severity.CRITICAL: 5,
    Severity.HIGH: 4,
    Severity.MEDIUM: 3,
    Severity.LOW: 2,
    Severity.APPROVED: 1,
}


def severity_priority(severity: Severity | None) -> int:
    """Sort priority of a severity; items without one rank lowest (0)."""
    if severity is None:
        return 0
    return SEVERITY_PRIORITY[severity]


def severity_from_confidence(score: int) -> Severity:
    """Map a legacy 1-10 confidence score onto the severity scale."""
    if not 1 <= score <= 10:
        raise ValueError(f"confidence score must be between 1 and 10, got {score}")
    if score >= 9:
        return Severity.CRITICAL
    if score >= 7:
        return Severity.HIGH
    if score >= 5:
        return Severity.MEDIUM
    if score >= 3:
        return Severity.LOW
    return Severity.APPROVED


class QueueName(str, enum.Enum):
    INCOMING = "incoming"
    BATCH = "batch"


class ServerState(str, enum.Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"


class ChangeStatus(str, enum.Enum):
    NEW = "NEW"
    MERGED = "MERGED"
    ABANDONED = "ABANDONED"


# --- Changes ---


class Owner(BaseModel):
    name: str = ""
    account_id: int | None = None


class FileInfo(BaseModel):
    path: str
    status: str = "M"  # "A" | "M" | "D" | "R"
    lines_inserted: int = 0
    lines_deleted: int = 0


class ReviewItem(BaseModel):
    rest_id: str  # project~branch~Ixxxx
    vcs_id: str = ""  # Change-Id shared by every revision of the change
    number: int = 0
    subject: str = ""
    project: str = ""
    branch: str = ""
    owner: Owner = Field(default_factory=Owner)
    updated_at: str = ""
    severity: Severity | None = None
    files: list[FileInfo] | None = None
    files_loaded: bool = False
    submittable: bool | None = None
    has_approving_vote: bool = False
    web_url: str | None = None
    skip_reason: str | None = None

    def clear_badges(self) -> ReviewItem:
        """Drop the Batch-only annotations (severity, submittable, skip reason)."""
        self.severity = None
        self.submittable = None
        self.skip_reason = None
        return self


# --- Chains ---


class ChainEntry(BaseModel):
    """One member of a related-changes graph, as reported by the backend."""

    commit: str = ""
    vcs_id: str
    number: int | None = None
    status: ChangeStatus | None = None


class ChangeDetail(BaseModel):
    vcs_id: str
    number: int = 0
    status: ChangeStatus = ChangeStatus.NEW


class ChainInfo(BaseModel):
    in_chain: bool = False
    position: int | None = None  # 1 = base
    chain_length: int | None = None
    chain_base_id: str | None = None
    chain_base_number: int | None = None


# --- Submission ---


class SubmitRequirements(BaseModel):
    submittable: bool
    unmet: list[str] = Field(default_factory=list)


class SubmissionAction(str, enum.Enum):
    VOTE = "vote"
    APPROVE = "approve"
    SUBMIT = "submit"
    APPROVE_AND_SUBMIT = "approve_and_submit"


class SubmissionReport(BaseModel):
    action: SubmissionAction
    success_count: int = 0
    failure_count: int = 0
    skipped_count: int = 0
    errors: list[str] = Field(default_factory=list)

    def summary(self, max_lines: int = 5) -> str:
        """Human readable outcome: counts, then at most ``max_lines`` error lines."""
        head = f"{self.action.value}: {self.success_count} succeeded, {self.failure_count} failed"
        if self.skipped_count:
            head += f", {self.skipped_count} skipped"
        if not self.errors:
            return head
        lines = [head, *self.errors[:max_lines]]
        hidden = len(self.errors) - max_lines
        if hidden > 0:
            lines.append(f"...and {hidden} more")
        return "\n".join(lines)


# --- Vote controls ---


class LabelValue(BaseModel):
    score: str  # "-2" .. "+2"
    description: str = ""


class LabelInfo(BaseModel):
    """A label the current user may vote on, with the values they may use."""

    name: str
    values: list[LabelValue] = Field(default_factory=list)


DEFAULT_LABELS: list[LabelInfo] = [
    LabelInfo(
        name="Code-Review",
        values=[
            LabelValue(score="-2", description="This shall not be merged"),
            LabelValue(score="-1", description="I would prefer this is not merged as is"),
            LabelValue(score="0", description="No score"),
            LabelValue(score="+1", description="Looks good to me, but someone else must approve"),
            LabelValue(score="+2", description="Looks good to me, approved"),
        ],
    ),
]


class Person(BaseModel):
    """A reviewer or CC suggestion: an account or a group."""

    id: str
    name: str
    short_name: str = ""
    is_group: bool = False


# --- Snapshots ---


class SelectionState(BaseModel):
    selected: list[str] = Field(default_factory=list)
    anchor: str | None = None


class ServerStatus(BaseModel):
    state: ServerState = ServerState.STOPPED
    port: int | None = None


class CoreSnapshot(BaseModel):
    incoming: list[ReviewItem] = Field(default_factory=list)
    batch: list[ReviewItem] = Field(default_factory=list)
    selection: dict[QueueName, SelectionState] = Field(default_factory=dict)
    server: ServerStatus = Field(default_factory=ServerStatus)
    labels: list[LabelInfo] = Field(default_factory=lambda: [label.model_copy(deep=True) for label in DEFAULT_LABELS])
    loading: bool = False
