"""
Vector store record types.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional

import numpy as np

from ..core.models import as_utc


@dataclass
class VectorRecord:
    """Represents a vector record with its scope and metadata."""

    id: str
    """Unique identifier: the content item id, or "<item id>#<chunk index>" for chunks"""

    vector: Optional[np.ndarray]
    """The vector representation of the content"""

    scope: str
    """Isolation boundary (user or tenant id)"""

    content_type: str
    """Content type value (message, file, transcript, knowledge)"""

    metadata: Dict[str, object] = field(default_factory=dict)
    """parent_id, chunk_index, text, created_at, project_id, model_version"""

    @property
    def parent_id(self) -> str:
        return str(self.metadata.get("parent_id", self.id))

    @property
    def created_at(self) -> Optional[datetime]:
        value = self.metadata.get("created_at")
        if isinstance(value, str):
            value = datetime.fromisoformat(value)
        return as_utc(value)


@dataclass
class QueryResult:
    """Represents a search result from vector store."""

    id: str
    """Identifier for the matching record"""

    score: float
    """Cosine similarity of the match"""

    metadata: Dict[str, object]
    """Metadata associated with the matched record"""

    @property
    def parent_id(self) -> str:
        return str(self.metadata.get("parent_id", self.id))


def chunk_record_id(item_id: str, chunk_index: int) -> str:
    return f"{item_id}#{chunk_index}"
