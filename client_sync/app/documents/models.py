"""
Wire models for the documents API.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class Keyword(BaseModel):
    term: str
    weight: float = 1.0


class Download(BaseModel):
    url: str
    title: str


class OwnerInfo(BaseModel):
    slug: str
    name: str
    logo_url: Optional[str] = None


class DocumentConfig(BaseModel):
    """Configuration of one document as served by GET /api/documents."""
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    slug: str
    title: str
    subtitle: Optional[str] = None
    welcome_message: Optional[str] = Field(None, alias="welcomeMessage")
    intro_message: Optional[str] = Field(None, alias="introMessage")
    cover: Optional[str] = None
    owner: Optional[str] = None
    category: Optional[str] = None
    year: Optional[str] = None
    show_document_selector: Optional[bool] = Field(None, alias="showDocumentSelector")
    show_keywords: Optional[bool] = Field(None, alias="showKeywords")
    show_downloads: Optional[bool] = Field(None, alias="showDownloads")
    keywords: List[Keyword] = Field(default_factory=list)
    downloads: List[Download] = Field(default_factory=list)
    owner_info: Optional[OwnerInfo] = Field(None, alias="ownerInfo")
    metadata: Dict[str, Any] = Field(default_factory=dict)


class DocumentInfo(BaseModel):
    """Public details returned alongside a passcode prompt."""
    model_config = ConfigDict(extra="allow")

    title: str
    access_level: Optional[str] = None
    requires_passcode: Optional[bool] = None
