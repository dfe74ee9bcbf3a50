"""Tests for context source resolution."""

import httpx
import pytest

from agentcron.context.resolver import ContextResolver, DefaultContextResolver
from agentcron.scheduling.types import ContextSource


def _web_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestApply:
    def test_prepends_context_block(self):
        resolver = DefaultContextResolver()
        assert resolver.apply("Summarize", "notes") == "<context>\nnotes\n</context>\n\nSummarize"

    def test_replaces_placeholder(self):
        resolver = DefaultContextResolver()
        assert resolver.apply("Read {{CONTEXT}} then act", "notes") == "Read notes then act"

    def test_empty_context_leaves_prompt(self):
        assert DefaultContextResolver().apply("Summarize", "") == "Summarize"

    def test_satisfies_protocol(self):
        assert isinstance(DefaultContextResolver(), ContextResolver)


class TestResolve:
    @pytest.mark.asyncio
    async def test_text_source(self, tmp_path):
        resolver = DefaultContextResolver(root=tmp_path)
        result = await resolver.resolve([ContextSource(type="text", value="remember the milk")], "user-1")
        assert result == "### text: inline\nremember the milk"

    @pytest.mark.asyncio
    async def test_label_and_truncation(self, tmp_path):
        resolver = DefaultContextResolver(root=tmp_path)
        source = ContextSource(type="text", value="abcdef", options={"label": "Notes", "max_chars": 3})
        result = await resolver.resolve([source], "user-1")
        assert result.startswith("### Notes\nabc\n\n[Content truncated: 6 total characters]")

    @pytest.mark.asyncio
    async def test_file_source(self, tmp_path):
        (tmp_path / "notes.md").write_text("quarterly goals")
        resolver = DefaultContextResolver(root=tmp_path)
        result = await resolver.resolve([ContextSource(type="file", value="notes.md")], "user-1")
        assert "quarterly goals" in result

    @pytest.mark.asyncio
    async def test_file_outside_root_is_rejected(self, tmp_path):
        root = tmp_path / "root"
        root.mkdir()
        (tmp_path / "secret.txt").write_text("nope")
        resolver = DefaultContextResolver(root=root)
        result = await resolver.resolve([ContextSource(type="file", value="../secret.txt")], "user-1")
        assert "nope" not in result
        assert "[Failed to load file source" in result

    @pytest.mark.asyncio
    async def test_missing_file_does_not_fail_others(self, tmp_path):
        resolver = DefaultContextResolver(root=tmp_path)
        sources = [ContextSource(type="file", value="missing.md"), ContextSource(type="text", value="still here")]
        result = await resolver.resolve(sources, "user-1")
        assert "[Failed to load file source" in result
        assert "still here" in result

    @pytest.mark.asyncio
    async def test_folder_source(self, tmp_path):
        docs = tmp_path / "docs"
        (docs / "sub").mkdir(parents=True)
        (docs / "a.md").write_text("alpha")
        (docs / "b.txt").write_text("beta")
        (docs / "sub" / "c.md").write_text("gamma")
        resolver = DefaultContextResolver(root=tmp_path)

        flat = await resolver.resolve([ContextSource(type="folder", value="docs", options={"pattern": "*.md"})], "u")
        assert "alpha" in flat and "beta" not in flat and "gamma" not in flat

        deep = await resolver.resolve(
            [ContextSource(type="folder", value="docs", options={"pattern": "*.md", "recursive": True})], "u"
        )
        assert "alpha" in deep and "gamma" in deep

    @pytest.mark.asyncio
    async def test_web_source_extracts_html_text(self, tmp_path):
        html = (
            "<html><head><script>var x = 1;</script></head><body>"
            "<nav>Menu</nav><article><h1>Release notes</h1><p>Version 2 ships today.</p></article>"
            "</body></html>"
        )

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text=html, headers={"content-type": "text/html; charset=utf-8"})

        resolver = DefaultContextResolver(root=tmp_path, client=_web_client(handler))
        result = await resolver.resolve([ContextSource(type="web", value="https://example.test/notes")], "u")
        assert "Release notes" in result
        assert "Version 2 ships today." in result
        assert "Menu" not in result
        assert "var x" not in result

    @pytest.mark.asyncio
    async def test_web_source_plain_text(self, tmp_path):
        resolver = DefaultContextResolver(
            root=tmp_path, client=_web_client(lambda request: httpx.Response(200, text="raw body"))
        )
        result = await resolver.resolve([ContextSource(type="web", value="https://example.test/raw")], "u")
        assert result.endswith("raw body")

    @pytest.mark.asyncio
    async def test_web_source_http_error(self, tmp_path):
        resolver = DefaultContextResolver(root=tmp_path, client=_web_client(lambda request: httpx.Response(404)))
        result = await resolver.resolve([ContextSource(type="web", value="https://example.test/gone")], "u")
        assert "[Failed to load web source" in result

    @pytest.mark.asyncio
    async def test_web_source_rejects_non_http(self, tmp_path):
        resolver = DefaultContextResolver(root=tmp_path)
        result = await resolver.resolve([ContextSource(type="web", value="file:///etc/passwd")], "u")
        assert "[Failed to load web source" in result
