"""
Core Pydantic schemas for the Insight Extraction Pipeline.

Every component reads and writes these models, and the Progress Store
serialises them verbatim, so provenance survives restarts end-to-end from
chunk planning through certification.
"""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, computed_field, field_validator, model_validator

from insight_pipeline.utils.helpers import utcnow


# --- Enumerations ------------------------------------------------------------

class ChunkStatus(str, Enum):
    PENDING = "Pending"
    IN_PROGRESS = "InProgress"
    COMPLETE = "Complete"
    FAILED = "Failed"


class InsightType(str, Enum):
    USER_JOURNEY = "UserJourney"
    TECHNICAL_INSIGHT = "TechnicalInsight"
    STRATEGIC_THEME = "StrategicTheme"

    @property
    def prefix(self) -> str:
        return _ID_PREFIXES[self]

    @classmethod
    def _missing_(cls, value: object) -> Optional["InsightType"]:
        # Also accept the id prefix ("UJ") and the member name ("USER_JOURNEY").
        for member in cls:
            if value in (member.prefix, member.name):
                return member
        return None


_ID_PREFIXES = {
    InsightType.USER_JOURNEY: "UJ",
    InsightType.TECHNICAL_INSIGHT: "TI",
    InsightType.STRATEGIC_THEME: "ST",
}


class Relation(str, Enum):
    RELATES_TO = "relates_to"
    DEPENDS_ON = "depends_on"
    SUPERSEDES = "supersedes"


class Verdict(str, Enum):
    CONFIRMED = "Confirmed"
    REFUTED = "Refuted"
    INCONCLUSIVE = "Inconclusive"

    @property
    def counts_toward_quota(self) -> bool:
        return self is not Verdict.INCONCLUSIVE


class CertificationStatus(str, Enum):
    CERTIFIED = "Certified"
    INCOMPLETE = "Incomplete"


# --- Sources & Chunks ---------------------------------------------------------

class LineRange(BaseModel):
    """1-based, end-inclusive range of lines."""

    start: int
    end: int

    @property
    def length(self) -> int:
        return max(self.end - self.start + 1, 0)


class SourceDocument(BaseModel):
    """
    A registered input document.

    `chunk_size` / `overlap_size` are stamped by the first `plan` call and
    are what later plans are compared against for drift.
    """

    id: str
    path: str
    total_lines: int = Field(ge=0)
    chunk_size: Optional[int] = None
    overlap_size: Optional[int] = None
    registered_at: datetime = Field(default_factory=utcnow)

    @property
    def planned(self) -> bool:
        return self.chunk_size is not None


class Chunk(BaseModel):
    """A line window of one SourceDocument - the unit of extraction work."""

    id: str
    source_id: str
    index: int
    start_line: int
    end_line: int
    overlap_with_prev: Optional[LineRange] = None
    status: ChunkStatus = ChunkStatus.PENDING
    failure_reason: Optional[str] = None
    attempts: int = 0
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def line_range(self) -> LineRange:
        return LineRange(start=self.start_line, end=self.end_line)

    @staticmethod
    def make_id(source_id: str, index: int) -> str:
        return f"{source_id}#{index:04d}"


# --- Insights ----------------------------------------------------------------

class SourceRef(BaseModel):
    """Where an insight was (re-)derived from."""

    source_id: str
    start_line: int
    end_line: int
    chunk_id: Optional[str] = None


class Insight(BaseModel):
    """A typed, deduplicated unit of extracted knowledge."""

    id: str
    type: InsightType
    dedup_key: str
    fields: dict[str, str] = Field(default_factory=dict)
    source_refs: list[SourceRef] = Field(default_factory=list)
    retired_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @computed_field
    @property
    def retired(self) -> bool:
        return self.retired_by is not None

    @property
    def sequence(self) -> int:
        return int(self.id.rsplit("-", 1)[1])


class CrossReference(BaseModel):
    from_id: str
    to_id: str
    relation: Relation = Relation.RELATES_TO
    note: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def key(self) -> tuple[str, str, Relation]:
        return (self.from_id, self.to_id, self.relation)


class VerificationRecord(BaseModel):
    """
    A claim -> question -> answer -> verdict tuple attached to a chunk.

    Records are immutable; a correction is a new record whose `evidence_ref`
    points at the record it amends.
    """

    id: str
    chunk_id: str
    claim_ref: str
    question: str
    answer: str
    verdict: Verdict
    evidence_ref: Optional[str] = None
    recorded_at: datetime = Field(default_factory=utcnow)

    model_config = {"frozen": True}


# --- Extractor Contract -------------------------------------------------------

class ExtractionRequest(BaseModel):
    """What the pipeline hands to the external Extractor for one chunk."""

    document_id: str
    chunk_id: str
    start_line: int
    end_line: int
    overlap_context_lines: int = 0
    text: str = ""
    context: str = ""


class CandidateInsight(BaseModel):
    type: InsightType
    fields: dict[str, str]

    @field_validator("type", mode="before")
    @classmethod
    def _accept_prefix(cls, value: Any) -> Any:
        return InsightType(value) if isinstance(value, str) else value

    @model_validator(mode="before")
    @classmethod
    def _stringify_fields(cls, data: Any) -> Any:
        if isinstance(data, dict) and isinstance(data.get("fields"), dict):
            data = {**data, "fields": {str(k): str(v) for k, v in data["fields"].items()}}
        return data


class CandidateVerification(BaseModel):
    question: str
    answer: str
    verdict: Verdict
    claim_ref: str = ""
    evidence_ref: Optional[str] = None


class CandidateLink(BaseModel):
    """
    A link proposed by the Extractor.

    Refs are either existing insight ids ("UJ-003") or positions of insights
    in the same ExtractionResult ("#0").
    """

    from_ref: str
    to_ref: str
    relation: Relation = Relation.RELATES_TO
    note: Optional[str] = None


class ExtractionResult(BaseModel):
    insights: list[CandidateInsight] = Field(default_factory=list)
    verification_records: list[CandidateVerification] = Field(default_factory=list)
    links: list[CandidateLink] = Field(default_factory=list)


# --- Coverage Findings ----------------------------------------------------------

class CoverageGap(BaseModel):
    kind: Literal["gap"] = "gap"
    from_line: int
    to_line: int

    def describe(self) -> str:
        return f"lines {self.from_line}-{self.to_line} not covered by any complete chunk"


class CoverageOverlapExcess(BaseModel):
    kind: Literal["overlap_excess"] = "overlap_excess"
    first_chunk: str
    second_chunk: str
    overlap_lines: int
    allowed: int

    def describe(self) -> str:
        return (
            f"{self.first_chunk} and {self.second_chunk} overlap by "
            f"{self.overlap_lines} lines (allowed {self.allowed})"
        )


class CoverageOutOfRange(BaseModel):
    kind: Literal["out_of_range"] = "out_of_range"
    chunk_id: str
    end_line: int
    total_lines: int

    def describe(self) -> str:
        return f"{self.chunk_id} ends at line {self.end_line} beyond total {self.total_lines}"


Finding = Annotated[
    Union[CoverageGap, CoverageOverlapExcess, CoverageOutOfRange],
    Field(discriminator="kind"),
]


class Certificate(BaseModel):
    document_id: str
    status: CertificationStatus
    findings: list[Finding] = Field(default_factory=list)
    percent_complete: float = 0.0
    chunks_complete: int = 0
    chunks_total: int = 0


class CorpusCertificate(BaseModel):
    status: CertificationStatus
    documents: list[Certificate] = Field(default_factory=list)
    percent_complete: float = 0.0
    generated_at: datetime = Field(default_factory=utcnow)


# --- Derived Progress ------------------------------------------------------------

class DocumentProgress(BaseModel):
    document_id: str
    total_lines: int
    chunks_total: int = 0
    chunks_pending: int = 0
    chunks_in_progress: int = 0
    chunks_complete: int = 0
    chunks_failed: int = 0
    lines_covered: int = 0
    percent_complete: float = 0.0


class ProgressState(BaseModel):
    """Recomputed from the entity stores on every read; never persisted."""

    documents: list[DocumentProgress] = Field(default_factory=list)
    insights_total_by_type: dict[str, int] = Field(default_factory=dict)
    retired_total: int = 0
    cross_refs_total: int = 0
    verification_total: int = 0
    generated_at: datetime = Field(default_factory=utcnow)
