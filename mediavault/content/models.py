from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field


class Blog(BaseModel):
    id: str
    owner_id: str
    name: str = ""


class UserProfile(BaseModel):
    user_id: str
    email: Optional[str] = None
    total_storage_mb: Optional[float] = Field(default=None, ge=0)


class ContentItem(BaseModel):
    id: str
    blog_id: str
    title: str = ""
    featured_image_url: Optional[str] = None


class Product(BaseModel):
    id: str
    blog_id: str
    name: str = ""
    image_urls: List[str] = Field(default_factory=list)


class ImageRef(BaseModel):
    """An image URL referenced by a blog document."""
    source: str  # "content" | "product"
    document_id: str
    url: str
