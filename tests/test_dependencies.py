import sys
from pathlib import Path

import pytest

from dlqueue import dependencies
from dlqueue.dependencies import DependencyManager
from dlqueue.exceptions import DependencyNotFoundError


@pytest.fixture
def manager(tmp_path, monkeypatch):
    monkeypatch.delenv('YTDLP_PATH', raising=False)
    monkeypatch.delenv('FFMPEG_PATH', raising=False)
    monkeypatch.setattr(dependencies.shutil, 'which', lambda name: None)
    return DependencyManager(install_dir=tmp_path / 'bin')


class TestDependencyLookup:

    def test_nothing_found(self, manager):
        assert manager.find_yt_dlp() is None
        with pytest.raises(DependencyNotFoundError, match="FFMPEG_PATH"):
            manager.require_ffmpeg()
        with pytest.raises(DependencyNotFoundError):
            manager.require_yt_dlp()

    def test_environment_override(self, manager, tmp_path, monkeypatch):
        ffmpeg = tmp_path / 'custom-ffmpeg'
        ffmpeg.write_bytes(b'')
        monkeypatch.setenv('FFMPEG_PATH', str(ffmpeg))
        assert manager.require_ffmpeg() == ffmpeg

    def test_missing_override_falls_through(self, manager, tmp_path, monkeypatch, caplog):
        monkeypatch.setenv('YTDLP_PATH', str(tmp_path / 'missing'))
        monkeypatch.setattr(dependencies.shutil, 'which', lambda name: '/usr/bin/' + name)
        assert manager.find_yt_dlp() == Path('/usr/bin/yt-dlp')
        assert 'YTDLP_PATH points to a missing file' in caplog.text

    def test_install_dir_wins_over_path(self, manager, monkeypatch):
        manager.install_dir.mkdir()
        local = manager.install_dir / ('yt-dlp.exe' if sys.platform == 'win32' else 'yt-dlp')
        local.write_bytes(b'')
        monkeypatch.setattr(dependencies.shutil, 'which', lambda name: '/usr/bin/' + name)
        assert manager.require_yt_dlp() == local

    @pytest.mark.asyncio
    async def test_initialize_sets_both_paths(self, manager, monkeypatch):
        monkeypatch.setattr(dependencies.shutil, 'which', lambda name: '/usr/bin/' + name)
        await manager.initialize()
        assert manager.yt_dlp_path == Path('/usr/bin/yt-dlp')
        assert manager.ffmpeg_path == Path('/usr/bin/ffmpeg')

    @pytest.mark.asyncio
    async def test_version_of_missing_executable(self, manager, tmp_path):
        assert await manager.get_version(None) == "Not found"
        assert await manager.get_version(tmp_path / 'nope') == "Not found"


class TestInstall:

    @pytest.mark.asyncio
    async def test_unsupported_platform(self, manager, monkeypatch):
        monkeypatch.setattr(dependencies.sys, 'platform', 'plan9')
        with pytest.raises(DependencyNotFoundError, match="plan9"):
            await manager.install_yt_dlp()

    @pytest.mark.asyncio
    async def test_install_writes_executable(self, manager, monkeypatch):
        monkeypatch.setattr(dependencies.sys, 'platform', 'linux')
        reports = []
        manager.progress_callback = lambda percent, text: reports.append((percent, text))

        async def fake_download(session, url, save_path):
            save_path.write_bytes(b'#!/bin/sh\n')

        monkeypatch.setattr(manager, '_download_file', fake_download)
        path = await manager.install_yt_dlp()

        assert path.parent == manager.install_dir
        assert path.read_bytes() == b'#!/bin/sh\n'
        assert manager.yt_dlp_path == path
        assert reports[-1] == (100, 'Download complete.')
        assert not list(manager.install_dir.glob('*.part'))
