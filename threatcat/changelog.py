"""Markdown changelog of what a run changed in the threat model."""

import logging
from datetime import datetime
from pathlib import Path
from typing import Optional, Protocol

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = '%Y-%m-%d %H:%M:%S'


class ChangelogSink(Protocol):
    """The only capability the merger and synthesizer need from a changelog."""

    def add_entry(self, message: str) -> None:
        ...


class Changelog:
    """Collects free-form entries and prepends them as a revision block to a file."""

    def __init__(self):
        self._entries: list[str] = []

    @property
    def entries(self) -> list[str]:
        return list(self._entries)

    def add_entry(self, message: str) -> None:
        self._entries.append(message)
        logger.debug(f'Changelog entry added: {message}')

    def format_block(self, now: Optional[datetime] = None) -> str:
        now = now or datetime.now()
        lines = [f'### New Revision ({now.strftime(TIMESTAMP_FORMAT)})', '']
        if self._entries:
            lines.extend(f'- {entry}' for entry in self._entries)
        else:
            lines.append('*no changes*')
        return '\n'.join(lines) + '\n\n'

    def output_to(self, path: str | Path, now: Optional[datetime] = None) -> Path:
        path = Path(path)
        logger.debug(f'Writing changelog to {path}')
        previous = path.read_text(encoding='utf-8') if path.exists() else ''
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.format_block(now) + previous, encoding='utf-8')
        return path


class NullChangelog:
    """Discards every entry."""

    def add_entry(self, message: str) -> None:
        pass
