"""
Backend envelope and knowledge-base records
"""
from typing import Generic, List, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field

T = TypeVar("T")


class KnowledgeBase(BaseModel):
    """Knowledge base metadata as listed by the backend"""
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    kb_name: str
    kb_desc: Optional[str] = None
    coll_name: Optional[str] = None
    create_time: Optional[str] = None
    update_time: Optional[str] = None
    status: Optional[int] = None
    doc_count: Optional[int] = None
    total_size: Optional[int] = None
    rerank_model_id: Optional[str] = None
    embedding_model_id: Optional[str] = None


class KnowledgeBasePage(BaseModel):
    """Paginated knowledge-base listing"""
    model_config = ConfigDict(extra="ignore")

    items: List[KnowledgeBase] = Field(default_factory=list)
    total: int = 0
    page: int = 1
    page_size: int = 10
    total_pages: int = 0


class ApiEnvelope(BaseModel, Generic[T]):
    """Standard backend response: {code, msg, data}"""
    model_config = ConfigDict(extra="ignore")

    code: int
    msg: str = ""
    data: Optional[T] = None
