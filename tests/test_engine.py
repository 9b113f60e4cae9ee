"""End-to-end tests for the download engine, driven by fake runner, info provider and dependencies."""

import threading
import time
from pathlib import Path

import pytest

from conftest import RunnerScript, make_record, make_request, wait_until
import dlqueue.engine as engine_module
from dlqueue.exceptions import InfoExtractionError
from dlqueue.jobs import (
    JobStatus, MediaInfo, PlaylistEntry, PlaylistInfo, PlaylistRequest, Rendition, SessionItem
)

YOUTUBE_URL = 'https://www.youtube.com/watch?v=abc'


def split_formats_info() -> MediaInfo:
    return MediaInfo(
        id='abc',
        title='My Clip',
        uploader='Chan',
        formats=[
            Rendition(format_id='137', ext='mp4', vcodec='avc1', acodec='none', video_ext='mp4', height=1080),
            Rendition(format_id='140', ext='m4a', vcodec='none', acodec='mp4a', video_ext='none', audio_ext='m4a'),
        ]
    )


def arg_after(args, flag):
    return args[args.index(flag) + 1]


class TestSuccessfulDownload:
    """A video+audio job from admission to its history row."""

    @pytest.mark.asyncio
    async def test_split_format_download_blends_progress_and_records_output(
            self, engine, event_log, history, info_provider, runner_factory, tmp_path):
        out_dir = tmp_path / 'out'
        final_path = out_dir / 'My Clip via dlqueue.mp4'
        info_provider.media[YOUTUBE_URL] = split_formats_info()
        runner_factory.scripts[YOUTUBE_URL] = RunnerScript(
            output='[info] abc: Downloading 1 format(s): 137+140\n',
            events=[
                ('info', 'abc: Downloading 1 format(s): 137+140'),
                ('download', f'Destination: {out_dir / "My Clip via dlqueue.f137.mp4"}'),
                ('merger', f'Merging formats into "{final_path}"'),
            ],
            progress=[10, 50, 95, 5, 40, 90],
            files={final_path: b'x' * 1234}
        )

        assert engine.start_download('job-1', make_request(YOUTUBE_URL, format='137+140', custom_download_path=str(out_dir)))
        await engine.drain()

        percents = [progress.percent for _, progress in event_log.events['progress']]
        assert percents == pytest.approx([5, 25, 47.5, 52.5, 70, 95])
        assert event_log.ids('completed') == ['job-1']
        assert event_log.events['error'] == []
        assert info_provider.media_calls == [YOUTUBE_URL]

        row = history.get_by_id('job-1')
        assert row.status == JobStatus.COMPLETED
        assert row.title == 'My Clip'
        assert row.saved_file_name == final_path.name
        assert row.file_size == 1234
        assert row.download_path == str(out_dir)
        assert row.selected_format.format_id == '137'
        assert 'Downloading 1 format(s)' in row.log
        assert row.command.startswith('yt-dlp ')

    @pytest.mark.asyncio
    async def test_command_line_carries_selector_ffmpeg_location_and_url_last(self, engine, runner_factory, tmp_path):
        engine.start_download('job-1', make_request(YOUTUBE_URL, format='137+140', custom_download_path=str(tmp_path)))
        await engine.drain()

        args = runner_factory.calls[0]
        assert arg_after(args, '-f') == '137+140'
        assert arg_after(args, '--ffmpeg-location') == str(Path('/opt/ffmpeg/bin'))
        assert args[-1] == YOUTUBE_URL

    @pytest.mark.asyncio
    async def test_destination_defaults_to_uploader_folder(self, engine, history, info_provider, settings):
        info_provider.media[YOUTUBE_URL] = split_formats_info()
        engine.start_download('job-1', make_request(YOUTUBE_URL))
        await engine.drain()

        expected = settings.download_path / 'Videos' / 'Chan'
        assert expected.is_dir()
        assert history.get_by_id('job-1').download_path == str(expected)

    @pytest.mark.asyncio
    async def test_queued_request_keeps_its_signature_after_late_binding(self, engine, runner_factory):
        runner_factory.default = RunnerScript(block=True)
        request = make_request(YOUTUBE_URL)
        engine.start_download('job-1', request)
        await wait_until(lambda: runner_factory.active == 1)

        assert engine.queue.get_entry('job-1').request.custom_download_path is None
        assert not engine.start_download('job-2', make_request(YOUTUBE_URL))

        runner_factory.gate.set()
        await engine.drain()

    @pytest.mark.asyncio
    async def test_share_watermark_replaces_size(self, engine, history, settings, runner_factory, transcoder, tmp_path):
        settings.share_watermark = True
        final_path = tmp_path / 'clip.mp4'
        runner_factory.scripts[YOUTUBE_URL] = RunnerScript(
            events=[('merger', f'Merging formats into "{final_path}"')],
            files={final_path: b'abc'}
        )
        engine.start_download('job-1', make_request(YOUTUBE_URL, custom_download_path=str(tmp_path)))
        await engine.drain()

        assert len(transcoder.calls) == 1
        assert transcoder.calls[0][0] == final_path
        assert history.get_by_id('job-1').file_size == transcoder.size

    @pytest.mark.asyncio
    async def test_unlocated_output_uses_size_estimate(self, engine, history, runner_factory, tmp_path):
        runner_factory.default = RunnerScript(progress=[100])
        engine.start_download('job-1', make_request(YOUTUBE_URL, custom_download_path=str(tmp_path / 'empty')))
        await engine.drain()

        row = history.get_by_id('job-1')
        assert row.status == JobStatus.COMPLETED
        assert row.file_size is None


class TestFailures:

    @pytest.mark.asyncio
    async def test_missing_ffmpeg_fails_before_spawn(self, engine, event_log, history, dependencies, runner_factory):
        dependencies.ffmpeg_path = None
        engine.start_download('job-1', make_request(YOUTUBE_URL))
        await engine.drain()

        assert runner_factory.calls == []
        [(job_id, message)] = event_log.events['error']
        assert job_id == 'job-1'
        assert 'ffmpeg' in message
        row = history.get_by_id('job-1')
        assert row.status == JobStatus.ERROR
        assert row.error == message

    @pytest.mark.asyncio
    async def test_nonzero_exit_is_recorded_as_error(self, engine, event_log, history, runner_factory):
        runner_factory.default = RunnerScript(exit_code=1)
        engine.start_download('job-1', make_request(YOUTUBE_URL))
        await engine.drain()

        assert event_log.events['error'] == [('job-1', 'Download exited with code 1')]
        assert event_log.events['completed'] == []
        assert history.get_by_id('job-1').status == JobStatus.ERROR

    @pytest.mark.asyncio
    async def test_failed_metadata_does_not_stop_download(self, engine, event_log, runner_factory):
        engine.start_download('job-1', make_request('https://example.com/unknown'))
        await engine.drain()

        assert len(runner_factory.calls) == 1
        assert event_log.ids('completed') == ['job-1']

    @pytest.mark.asyncio
    async def test_spawn_failure_is_recorded_as_error(self, engine, event_log, history, runner_factory):
        runner_factory.default = RunnerScript(raise_error=FileNotFoundError("yt-dlp executable not found"))
        engine.start_download('job-1', make_request(YOUTUBE_URL))
        entry = engine.queue.get_entry('job-1')
        await engine.drain()

        assert entry.record.status == JobStatus.ERROR
        assert event_log.events['error'] == [('job-1', 'yt-dlp executable not found')]
        assert event_log.events['completed'] == []
        row = history.get_by_id('job-1')
        assert row.status == JobStatus.ERROR
        assert row.error == 'yt-dlp executable not found'

    @pytest.mark.asyncio
    async def test_spawn_failure_after_cancel_is_not_an_error(self, engine, event_log, history, runner_factory):
        runner_factory.default = RunnerScript(block=True, raise_error=FileNotFoundError("yt-dlp executable not found"))
        engine.start_download('job-1', make_request(YOUTUBE_URL))
        await wait_until(lambda: runner_factory.active == 1)
        entry = engine.queue.get_entry('job-1')

        engine.cancel_download('job-1')
        await engine.drain()

        assert entry.record.status == JobStatus.CANCELLED
        assert event_log.events['error'] == []
        assert event_log.ids('cancelled') == ['job-1']
        assert history.get_by_id('job-1') is None


class TestCancellation:

    @pytest.mark.asyncio
    async def test_cancel_active_job_records_no_error(self, engine, event_log, history, runner_factory):
        runner_factory.default = RunnerScript(block=True)
        engine.start_download('job-1', make_request(YOUTUBE_URL))
        await wait_until(lambda: runner_factory.active == 1)
        entry = engine.queue.get_entry('job-1')

        assert engine.cancel_download('job-1')
        assert entry.record.status == JobStatus.CANCELLING
        await engine.drain()

        assert entry.record.status == JobStatus.CANCELLED
        assert event_log.ids('cancelled') == ['job-1']
        assert event_log.events['error'] == []
        assert event_log.events['completed'] == []
        assert history.get_by_id('job-1') is None
        assert not engine.queue.contains('job-1')

    @pytest.mark.asyncio
    async def test_cancel_queued_job_never_spawns(self, engine, runner_factory):
        runner_factory.default = RunnerScript(block=True)
        urls = [f'https://example.com/v{i}' for i in range(3)]
        for index, url in enumerate(urls):
            engine.start_download(f'job-{index}', make_request(url))
        await wait_until(lambda: runner_factory.active == 2)
        entry = engine.queue.get_entry('job-2')

        assert engine.cancel_download('job-2')
        assert entry.record.status == JobStatus.CANCELLED
        runner_factory.gate.set()
        await engine.drain()

        assert urls[2] not in [args[-1] for args in runner_factory.calls]

    @pytest.mark.asyncio
    async def test_cancel_unknown_job(self, engine, event_log):
        assert not engine.cancel_download('missing')
        assert event_log.events['cancelled'] == []

    @pytest.mark.asyncio
    async def test_cancel_frees_slot_for_next_job(self, engine, runner_factory):
        runner_factory.default = RunnerScript(block=True)
        for index in range(3):
            engine.start_download(f'job-{index}', make_request(f'https://example.com/v{index}'))
        await wait_until(lambda: runner_factory.active == 2)

        engine.cancel_download('job-0')
        await wait_until(lambda: engine.queue.is_active('job-2'))
        assert engine.get_queue_status().queued == 0

        runner_factory.gate.set()
        await engine.drain()

    @pytest.mark.asyncio
    async def test_cancel_while_creating_directories_leaves_no_history(
            self, engine, event_log, history, runner_factory, monkeypatch):
        create_directory = engine_module.ensure_directory_exists
        entered = threading.Event()

        def slow_create(path):
            if threading.current_thread() is not threading.main_thread():
                entered.set()
                time.sleep(0.2)
            return create_directory(path)

        monkeypatch.setattr(engine_module, 'ensure_directory_exists', slow_create)
        engine.start_download('job-1', make_request(YOUTUBE_URL))
        entry = engine.queue.get_entry('job-1')
        await wait_until(entered.is_set)

        assert engine.cancel_download('job-1')
        await engine.drain()

        assert entry.record.status == JobStatus.CANCELLED
        assert runner_factory.calls == []
        assert event_log.events['error'] == []
        assert history.get_by_id('job-1') is None
        assert not engine.queue.contains('job-1')


class TestAdmissionAndConcurrency:

    @pytest.mark.asyncio
    async def test_duplicate_requests_are_rejected(self, engine, event_log, history):
        assert engine.start_download('job-1', make_request(YOUTUBE_URL, format='22'))
        assert not engine.start_download('job-2', make_request(f' {YOUTUBE_URL} ', format='22 '))
        assert not engine.start_download('job-1', make_request('https://example.com/other'))
        assert history.get_by_id('job-2') is None
        assert [record.id for (record,) in event_log.events['queued']] == ['job-1']
        await engine.drain()

    @pytest.mark.asyncio
    async def test_admission_writes_pending_history_row(self, engine, event_log, history):
        engine.start_download('job-1', make_request(YOUTUBE_URL, tags=['music']))

        row = history.get_by_id('job-1')
        assert row.status == JobStatus.PENDING
        assert row.tags == ['music']
        [(record,)] = event_log.events['queued']
        assert record.id == 'job-1'
        assert record.status == JobStatus.PENDING
        await engine.drain()

    @pytest.mark.asyncio
    async def test_never_more_active_than_limit(self, engine, event_log, runner_factory):
        runner_factory.default = RunnerScript(block=True)
        for index in range(4):
            engine.start_download(f'job-{index}', make_request(f'https://example.com/v{index}'))
        await wait_until(lambda: runner_factory.active == 2)

        status = engine.get_queue_status()
        assert (status.active, status.queued) == (2, 2)

        runner_factory.gate.set()
        await engine.drain()

        assert runner_factory.max_active == 2
        assert sorted(event_log.ids('completed')) == [f'job-{index}' for index in range(4)]

    @pytest.mark.asyncio
    async def test_raising_limit_promotes_queued_jobs(self, engine, runner_factory):
        runner_factory.default = RunnerScript(block=True)
        for index in range(3):
            engine.start_download(f'job-{index}', make_request(f'https://example.com/v{index}'))
        await wait_until(lambda: runner_factory.active == 2)

        engine.update_max_concurrent(3)
        await wait_until(lambda: runner_factory.active == 3)

        runner_factory.gate.set()
        await engine.drain()

    @pytest.mark.asyncio
    async def test_active_downloads_lists_queued_and_running(self, engine, runner_factory):
        runner_factory.default = RunnerScript(block=True)
        for index in range(3):
            engine.start_download(f'job-{index}', make_request(f'https://example.com/v{index}'))
        await wait_until(lambda: runner_factory.active == 2)

        assert sorted(record.id for record in engine.get_active_downloads()) == ['job-0', 'job-1', 'job-2']

        runner_factory.gate.set()
        await engine.drain()
        assert engine.get_active_downloads() == []


class TestSession:

    @pytest.mark.asyncio
    async def test_restore_skips_terminal_history_rows(self, engine, event_log, history, session_store, runner_factory):
        runner_factory.default = RunnerScript(block=True)
        done_request = make_request('https://example.com/done')
        again_request = make_request('https://example.com/again')
        await session_store.save([
            SessionItem(id='done', request=done_request, record=make_record('done', done_request.url)),
            SessionItem(id='again', request=again_request, record=make_record(
                'again', again_request.url, title='Resumed', status=JobStatus.DOWNLOADING, completed_at=123
            )),
        ])
        history.upsert('done', {'status': JobStatus.COMPLETED}, {'url': done_request.url})

        assert engine.restore_active_downloads() == 1
        assert engine.restore_active_downloads() == 0

        assert not engine.queue.contains('done')
        entry = engine.queue.get_entry('again')
        assert entry.record.status == JobStatus.PENDING
        assert entry.record.completed_at is None
        assert history.get_by_id('again').title == 'Resumed'
        assert [record.id for (record,) in event_log.events['queued']] == ['again']

        await engine.shutdown()

    @pytest.mark.asyncio
    async def test_shutdown_keeps_unfinished_jobs_in_session(self, engine, event_log, history, session_store, runner_factory):
        runner_factory.default = RunnerScript(block=True)
        for index in range(3):
            engine.start_download(f'job-{index}', make_request(f'https://example.com/v{index}'))
        await wait_until(lambda: runner_factory.active == 2)

        await engine.shutdown()

        saved = session_store.load()
        assert sorted(item.id for item in saved) == ['job-0', 'job-1', 'job-2']
        assert event_log.events['error'] == []
        assert event_log.events['completed'] == []
        assert history.get_by_id('job-0').status != JobStatus.ERROR
        assert len(runner_factory.calls) == 2

    @pytest.mark.asyncio
    async def test_finished_jobs_leave_the_session(self, engine, session_store):
        engine.start_download('job-1', make_request(YOUTUBE_URL))
        await engine.drain()
        await engine.flush_download_session()

        assert session_store.load() == []


class TestPlaylists:

    @staticmethod
    def playlist(titles):
        return PlaylistInfo(
            id='PL1',
            title='Mix',
            entries=[
                PlaylistEntry(id=f'e{index}', title=title, url=f'https://example.com/v{index}', index=index)
                for index, title in enumerate(titles, start=1)
            ]
        )

    @pytest.mark.asyncio
    async def test_reversed_range_is_swapped(self, engine, history, info_provider, settings):
        playlist_url = 'https://example.com/playlist?list=PL1'
        info_provider.playlists[playlist_url] = self.playlist([f'Track {i}' for i in range(1, 6)])

        result = await engine.start_playlist_download(PlaylistRequest(url=playlist_url, start_index=4, end_index=2))
        await engine.drain()

        assert (result.total_count, result.start_index, result.end_index) == (3, 2, 4)
        assert [ref.index for ref in result.entries] == [2, 3, 4]
        target = settings.download_path / 'Playlists' / 'Mix'
        assert target.is_dir()
        for ref in result.entries:
            row = history.get_by_id(ref.download_id)
            assert row.playlist_title == 'Mix'
            assert row.playlist_size == 3
            assert row.playlist_index == ref.index
            assert row.playlist_id == result.group_id
            assert row.download_path == str(target)

    @pytest.mark.asyncio
    async def test_end_beyond_playlist_is_clamped(self, engine, info_provider):
        playlist_url = 'https://example.com/playlist?list=PL1'
        info_provider.playlists[playlist_url] = self.playlist([f'Track {i}' for i in range(1, 6)])

        result = await engine.start_playlist_download(PlaylistRequest(url=playlist_url, start_index=3, end_index=99))
        await engine.drain()

        assert [ref.index for ref in result.entries] == [3, 4, 5]

    @pytest.mark.asyncio
    async def test_colliding_titles_get_index_prefix(self, engine, info_provider, runner_factory):
        playlist_url = 'https://example.com/playlist?list=PL1'
        info_provider.playlists[playlist_url] = self.playlist(['Same', 'Same', 'Other'])

        await engine.start_playlist_download(PlaylistRequest(url=playlist_url))
        await engine.drain()

        names = sorted(Path(arg_after(args, '-o')).name for args in runner_factory.calls)
        assert names == [f'{index} - %(title)s via dlqueue.%(ext)s' for index in (1, 2, 3)]

    @pytest.mark.asyncio
    async def test_empty_playlist(self, engine, info_provider):
        playlist_url = 'https://example.com/playlist?list=EMPTY'
        info_provider.playlists[playlist_url] = PlaylistInfo(id='EMPTY', title='Nothing')

        result = await engine.start_playlist_download(PlaylistRequest(url=playlist_url))

        assert result.total_count == 0
        assert result.entries == []

    @pytest.mark.asyncio
    async def test_unlistable_playlist_raises(self, engine):
        with pytest.raises(InfoExtractionError):
            await engine.start_playlist_download(PlaylistRequest(url='https://example.com/playlist?list=NOPE'))
