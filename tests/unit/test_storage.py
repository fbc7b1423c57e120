"""
Unit tests for storage.py - Saving received files
"""
import asyncio
from pathlib import Path

import pytest

from shuttlr.storage import DownloadStore, safe_file_name, unique_path


class TestFileNames:
    """Tests for name sanitizing and collision handling"""

    @pytest.mark.parametrize('name,expected', [
        ('photo.jpg', 'photo.jpg'),
        ('../../etc/passwd', 'passwd'),
        ('C:\\Users\\me\\doc.pdf', 'doc.pdf'),
        ('..', 'untitled'),
        ('', 'untitled'),
    ])
    def test_safe_file_name(self, name, expected):
        assert safe_file_name(name) == expected

    def test_unique_path(self, temp_dir: Path):
        assert unique_path(temp_dir, 'a.txt') == temp_dir / 'a.txt'
        (temp_dir / 'a.txt').write_text('1')
        (temp_dir / 'a (1).txt').write_text('2')
        assert unique_path(temp_dir, 'a.txt') == temp_dir / 'a (2).txt'


class TestDownloadStore:
    """Tests for DownloadStore"""

    async def test_save(self, temp_dir: Path):
        store = DownloadStore(temp_dir / 'downloads')

        first = await store.save(b'one', 'report.pdf')
        second = await store.save(b'two', 'report.pdf')

        assert first.read_bytes() == b'one'
        assert second.name == 'report (1).pdf'
        assert second.read_bytes() == b'two'
        assert store.saved == [first, second]
        assert not list(store.directory.glob('.*.part'))

    async def test_concurrent_saves_with_same_name(self, temp_dir: Path):
        store = DownloadStore(temp_dir)

        paths = await asyncio.gather(
            store.save(b'first', 'a.txt'),
            store.save(b'second', 'a.txt'),
            store.save(b'third', 'a.txt'),
        )

        assert [p.name for p in paths] == ['a.txt', 'a (1).txt', 'a (2).txt']
        assert [p.read_bytes() for p in paths] == [b'first', b'second', b'third']
        assert not list(temp_dir.glob('.*.part'))
