"""Tests for saving received files."""

import pytest

from peerdrop.transfer import ReceivedFile, save_received_file
from peerdrop.transfer.storage import sanitize_file_name, unique_path


class TestSanitizeFileName:

    @pytest.mark.parametrize('raw, expected', [
        ('report.pdf', 'report.pdf'),
        ('../../etc/passwd', 'passwd'),
        ('C:\\Users\\me\\notes.txt', 'notes.txt'),
        ('.bashrc', 'bashrc'),
        ('..', 'received_file'),
        ('', 'received_file'),
        ('dir/', 'dir'),
    ])
    def test_sanitize(self, raw, expected):
        assert sanitize_file_name(raw) == expected


class TestSaveReceivedFile:

    def test_unique_path(self, tmp_path):
        (tmp_path / 'a.txt').write_text('x')
        (tmp_path / 'a_1.txt').write_text('x')

        assert unique_path(tmp_path / 'a.txt') == tmp_path / 'a_2.txt'
        assert unique_path(tmp_path / 'b.txt') == tmp_path / 'b.txt'

    @pytest.mark.asyncio
    async def test_saves_into_new_directory(self, tmp_path):
        target = tmp_path / 'downloads'
        received = ReceivedFile(file_name='hello.txt', mime_type='text/plain', data=b'hello')

        path = await save_received_file(received, target)

        assert path == target / 'hello.txt'
        assert path.read_bytes() == b'hello'
        assert not list(target.glob('*.part'))

    @pytest.mark.asyncio
    async def test_never_overwrites(self, tmp_path):
        first = await save_received_file(ReceivedFile('r.bin', 'application/octet-stream', b'1'), tmp_path)
        second = await save_received_file(ReceivedFile('r.bin', 'application/octet-stream', b'2'), tmp_path)

        assert first.name == 'r.bin'
        assert second.name == 'r_1.bin'
        assert first.read_bytes() == b'1'

    @pytest.mark.asyncio
    async def test_traversal_stays_in_directory(self, tmp_path):
        target = tmp_path / 'downloads'
        path = await save_received_file(
            ReceivedFile('../../escape.txt', 'text/plain', b'x'), target,
        )

        assert path.parent == target
