"""Column mapping models."""

from typing import Dict, List, Optional

from pydantic import BaseModel, Field

IGNORE_TARGET = "ignore"


class ColumnMapping(BaseModel):
    """Mapping of one source column onto a target field.

    A column is exactly one of: ignored, mapped (``target_field`` set) or
    unmapped.
    """

    source_column: str
    target_field: Optional[str] = None
    is_ignored: bool = False
    is_matched: bool = False  # Confident match (similarity >= threshold or chosen by operator)
    similarity: int = 0

    @property
    def status(self) -> str:
        if self.is_ignored:
            return "ignored"
        if self.target_field:
            return "mapped"
        return "unmapped"

    @property
    def is_locked(self) -> bool:
        return self.is_matched and self.similarity == 100


class MappingStats(BaseModel):
    total: int
    matched: int
    ignored: int
    unmapped: int


class MappingResponse(BaseModel):
    """Current mapping for the uploaded file."""

    columns: List[str]
    targets: List[str]
    mappings: List[ColumnMapping]
    stats: MappingStats
    unmapped_columns: List[str] = Field(default_factory=list)


class MappingChangeRequest(BaseModel):
    source_column: str
    target: str = Field(..., description=f"Target field name or '{IGNORE_TARGET}'")
    force: bool = False


class FinalMapping(BaseModel):
    """Source column -> target field for mapped columns only."""

    mapping: Dict[str, str] = Field(default_factory=dict)
