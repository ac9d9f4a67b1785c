from __future__ import annotations

from typing import Dict, List, Optional, Protocol

from mediavault.content.models import Blog, ContentItem, ImageRef, Product, UserProfile


class ContentRepository(Protocol):
    def list_blogs(self, user_id: str) -> List[Blog]: ...
    def get_user_profile(self, user_id: str) -> Optional[UserProfile]: ...
    def list_image_refs(self, user_id: str, blog_id: str) -> List[ImageRef]: ...


def _collect_refs(items: List[ContentItem], products: List[Product]) -> List[ImageRef]:
    refs: List[ImageRef] = []
    for item in items:
        if item.featured_image_url:
            refs.append(ImageRef(source="content", document_id=item.id, url=item.featured_image_url))
    for product in products:
        for url in product.image_urls:
            if url:
                refs.append(ImageRef(source="product", document_id=product.id, url=url))
    return refs


class InMemoryContentRepository:
    def __init__(self) -> None:
        self._blogs: Dict[str, Blog] = {}
        self._profiles: Dict[str, UserProfile] = {}
        self._content: Dict[str, ContentItem] = {}
        self._products: Dict[str, Product] = {}

    def add_blog(self, blog: Blog) -> Blog:
        self._blogs[blog.id] = blog
        return blog

    def save_profile(self, profile: UserProfile) -> UserProfile:
        self._profiles[profile.user_id] = profile
        return profile

    def add_content(self, item: ContentItem) -> ContentItem:
        self._content[item.id] = item
        return item

    def add_product(self, product: Product) -> Product:
        self._products[product.id] = product
        return product

    def list_blogs(self, user_id: str) -> List[Blog]:
        return sorted((b for b in self._blogs.values() if b.owner_id == user_id), key=lambda b: b.id)

    def get_user_profile(self, user_id: str) -> Optional[UserProfile]:
        return self._profiles.get(user_id)

    def list_image_refs(self, user_id: str, blog_id: str) -> List[ImageRef]:
        blog = self._blogs.get(blog_id)
        if blog is None or blog.owner_id != user_id:
            return []
        items = [c for c in self._content.values() if c.blog_id == blog_id]
        products = [p for p in self._products.values() if p.blog_id == blog_id]
        return _collect_refs(items, products)


class FirestoreContentRepository:
    """Firestore implementation.

    Layout: `users/{uid}` profile documents, `blogs/{blog_id}` with an
    `owner_id` field, and `content` / `products` subcollections per blog.
    """

    def __init__(self, client: Optional[object] = None) -> None:  # pragma: no cover - optional dep
        try:
            from google.cloud import firestore  # type: ignore
        except Exception as exc:
            raise RuntimeError("google-cloud-firestore not installed") from exc
        from mediavault.config import runtime_config

        project = runtime_config.get_gcp_project()
        if client is None and not project:
            raise RuntimeError("GCP project is required for Firestore content repo")
        self._client = client or firestore.Client(project=project)  # type: ignore[arg-type]

    def list_blogs(self, user_id: str) -> List[Blog]:  # pragma: no cover - requires Firestore
        query = self._client.collection("blogs").where("owner_id", "==", user_id)
        blogs = []
        for snap in query.stream():
            data = snap.to_dict() or {}
            blogs.append(Blog(id=snap.id, owner_id=user_id, name=data.get("name", "")))
        return sorted(blogs, key=lambda b: b.id)

    def get_user_profile(self, user_id: str) -> Optional[UserProfile]:  # pragma: no cover - requires Firestore
        snap = self._client.collection("users").document(user_id).get()
        if not snap or not snap.exists:
            return None
        data = snap.to_dict() or {}
        return UserProfile(
            user_id=user_id,
            email=data.get("email"),
            total_storage_mb=data.get("totalStorageMB", data.get("total_storage_mb")),
        )

    def list_image_refs(self, user_id: str, blog_id: str) -> List[ImageRef]:  # pragma: no cover - requires Firestore
        blog_ref = self._client.collection("blogs").document(blog_id)
        snap = blog_ref.get()
        if not snap or not snap.exists or (snap.to_dict() or {}).get("owner_id") != user_id:
            return []
        items = []
        for doc in blog_ref.collection("content").stream():
            data = doc.to_dict() or {}
            items.append(
                ContentItem(
                    id=doc.id,
                    blog_id=blog_id,
                    title=data.get("title", ""),
                    featured_image_url=data.get("featuredImageUrl") or data.get("featured_image_url"),
                )
            )
        products = []
        for doc in blog_ref.collection("products").stream():
            data = doc.to_dict() or {}
            products.append(
                Product(
                    id=doc.id,
                    blog_id=blog_id,
                    name=data.get("name", ""),
                    image_urls=list(data.get("imageUrls") or data.get("image_urls") or []),
                )
            )
        return _collect_refs(items, products)
