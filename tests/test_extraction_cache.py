"""Tests for analyst_core.extraction_cache."""
from analyst_core.extraction_cache import ExtractionCache, ProjectContext


def _cache(project_id="A"):
    context = ProjectContext()
    cache = ExtractionCache(context)
    if project_id is not None:
        context.open(project_id)
    return context, cache


class TestExtractionCache:
    def test_set_then_get(self):
        _, cache = _cache("A")
        cache.set("A", {"primaryGoal": "x"}, markdown="# md")
        result = cache.get()
        assert result.owner_project_id == "A"
        assert result.structured_data == {"primaryGoal": "x"}
        assert result.markdown == "# md"
        assert result.captured_at > 0

    def test_no_resurrection_after_navigation(self):
        context, cache = _cache("A")
        cache.set("A", {"x": 1})
        context.open("B")
        assert cache.get() is None
        context.open("A")
        assert cache.get() is None

    def test_reopening_same_project_clears(self):
        context, cache = _cache("A")
        cache.set("A", {"x": 1})
        context.open("A")
        assert cache.get() is None

    def test_close_project_clears(self):
        context, cache = _cache("A")
        cache.set("A", {"x": 1})
        context.close()
        assert cache.get() is None

    def test_set_for_other_project_ignored(self):
        _, cache = _cache("A")
        assert cache.set("B", {"x": 1}) is None
        assert cache.get() is None

    def test_project_ids_compared_as_strings(self):
        context, cache = _cache(None)
        context.open(42)
        cache.set(42, {"x": 1})
        assert cache.get().owner_project_id == "42"

    def test_invalidate(self):
        _, cache = _cache("A")
        cache.set("A", {"x": 1})
        cache.invalidate()
        assert cache.get() is None
