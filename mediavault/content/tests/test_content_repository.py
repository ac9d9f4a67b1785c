from mediavault.content.models import Blog, ContentItem, Product, UserProfile
from mediavault.content.repository import InMemoryContentRepository


def _repo():
    repo = InMemoryContentRepository()
    repo.add_blog(Blog(id="b2", owner_id="u1", name="Second"))
    repo.add_blog(Blog(id="b1", owner_id="u1", name="First"))
    repo.add_blog(Blog(id="b9", owner_id="u2"))
    repo.add_content(ContentItem(id="c1", blog_id="b1", featured_image_url="https://img/1.webp"))
    repo.add_content(ContentItem(id="c2", blog_id="b1"))
    repo.add_product(Product(id="p1", blog_id="b1", image_urls=["https://img/p1.webp", "https://img/p2.webp"]))
    repo.add_product(Product(id="p2", blog_id="b2", image_urls=["https://img/other.webp"]))
    return repo


def test_list_blogs_filters_by_owner():
    assert [b.id for b in _repo().list_blogs("u1")] == ["b1", "b2"]


def test_image_refs_collect_featured_and_product_images():
    refs = _repo().list_image_refs("u1", "b1")
    assert [(r.source, r.url) for r in refs] == [
        ("content", "https://img/1.webp"),
        ("product", "https://img/p1.webp"),
        ("product", "https://img/p2.webp"),
    ]


def test_image_refs_of_foreign_blog_are_empty():
    assert _repo().list_image_refs("u2", "b1") == []


def test_profile_lookup():
    repo = _repo()
    assert repo.get_user_profile("u1") is None
    repo.save_profile(UserProfile(user_id="u1", total_storage_mb=250))
    assert repo.get_user_profile("u1").total_storage_mb == 250
