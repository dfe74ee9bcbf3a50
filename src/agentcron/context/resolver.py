"""Context sources: fetch text/file/folder/web references and splice them into a prompt."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Protocol, Sequence, runtime_checkable

import httpx
from bs4 import BeautifulSoup

from agentcron.infrastructure.config import CONTEXT_ROOT
from agentcron.infrastructure.logger import logger
from agentcron.scheduling.types import ContextSource

CONTEXT_TOKEN = "{{CONTEXT}}"
DEFAULT_MAX_CHARS = 20_000
DEFAULT_MAX_FILES = 20
WEB_TIMEOUT_S = 20.0

_HEADERS = {
    "User-Agent": "agentcron/0.1 (+scheduled agent runs)",
    "Accept": "text/html,application/xhtml+xml,text/plain;q=0.9,*/*;q=0.8",
}


@runtime_checkable
class ContextResolver(Protocol):
    async def resolve(self, sources: Sequence[ContextSource], user_id: str) -> str: ...
    def apply(self, prompt: str, context: str) -> str: ...


class ContextSourceError(Exception):
    pass


def _truncate(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + f"\n\n[Content truncated: {len(text):,} total characters]"


def _clean_text(text: str) -> str:
    lines = (line.strip() for line in text.splitlines())
    return re.sub(r"\n{3,}", "\n\n", "\n".join(lines)).strip()


class DefaultContextResolver:
    """Resolves context sources rooted at a directory and over HTTP.

    File and folder sources must stay inside `root`.
    """

    def __init__(self, root: Path = CONTEXT_ROOT, client: httpx.AsyncClient | None = None) -> None:
        self._root = root.resolve()
        self._client = client

    async def resolve(self, sources: Sequence[ContextSource], user_id: str) -> str:
        sections: list[str] = []
        for source in sources:
            label = f"{source.type}: {source.value if source.type != 'text' else 'inline'}"
            try:
                body = await self._resolve_one(source)
            except (ContextSourceError, OSError, httpx.HTTPError) as err:
                logger.warning("Context source failed", type=source.type, value=source.value, user_id=user_id, error=str(err))
                body = f"[Failed to load {source.type} source: {err}]"
            sections.append(f"### {source.options.get('label') or label}\n{body}")
        return "\n\n".join(sections)

    def apply(self, prompt: str, context: str) -> str:
        if not context:
            return prompt
        if CONTEXT_TOKEN in prompt:
            return prompt.replace(CONTEXT_TOKEN, context)
        return f"<context>\n{context}\n</context>\n\n{prompt}"

    async def _resolve_one(self, source: ContextSource) -> str:
        max_chars = int(source.options.get("max_chars", DEFAULT_MAX_CHARS))
        if source.type == "text":
            return _truncate(source.value, max_chars)
        if source.type == "file":
            return _truncate(self._safe_path(source.value).read_text(errors="replace"), max_chars)
        if source.type == "folder":
            return _truncate(self._read_folder(source), max_chars)
        if source.type == "web":
            return _truncate(await self._fetch(source.value), max_chars)
        raise ContextSourceError(f"Unsupported context source type: {source.type}")

    def _safe_path(self, value: str) -> Path:
        path = (self._root / value).resolve()
        if not path.is_relative_to(self._root):
            raise ContextSourceError(f"Path escapes context root: {value}")
        if not path.exists():
            raise ContextSourceError(f"Not found: {value}")
        return path

    def _read_folder(self, source: ContextSource) -> str:
        folder = self._safe_path(source.value)
        if not folder.is_dir():
            raise ContextSourceError(f"Not a directory: {source.value}")
        pattern = source.options.get("pattern", "*")
        max_files = int(source.options.get("max_files", DEFAULT_MAX_FILES))
        matches = folder.rglob(pattern) if source.options.get("recursive") else folder.glob(pattern)
        files = sorted(p for p in matches if p.is_file())[:max_files]
        parts = [f"#### {p.relative_to(folder)}\n{p.read_text(errors='replace')}" for p in files]
        return "\n\n".join(parts) if parts else "[Folder is empty]"

    async def _fetch(self, url: str) -> str:
        if not url.startswith(("http://", "https://")):
            raise ContextSourceError(f"Invalid URL (must start with http/https): {url}")
        if self._client is not None:
            response = await self._client.get(url, headers=_HEADERS)
        else:
            async with httpx.AsyncClient(timeout=WEB_TIMEOUT_S, follow_redirects=True, max_redirects=5) as client:
                response = await client.get(url, headers=_HEADERS)
        response.raise_for_status()
        content_type = response.headers.get("content-type", "").lower()
        if "html" not in content_type:
            return response.text
        soup = BeautifulSoup(response.text, "html.parser")
        for tag in soup(["script", "style", "nav", "header", "footer", "aside", "form", "noscript", "iframe"]):
            tag.decompose()
        container = soup.find("article") or soup.find("main") or soup.find("body") or soup
        return _clean_text(container.get_text(separator="\n"))
