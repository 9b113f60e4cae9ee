from pathlib import Path

import pytest

from dlqueue.exceptions import TranscodeError
from dlqueue.transcoder import (
    Transcoder, build_drawtext_filter, build_share_watermark_text, normalize_watermark_line,
    resolve_watermark_output_paths
)


class TestWatermarkText:

    def test_normalize_strips_invisible_characters(self):
        assert normalize_watermark_line('  Hello\u200b\n  world \U0001F389 ', 'x', 28) == 'Hello world'

    def test_normalize_truncates_and_falls_back(self):
        assert normalize_watermark_line('a' * 30, 'x', 28) == 'a' * 25 + '...'
        assert normalize_watermark_line('   ', 'Fallback', 28) == 'Fallback'
        assert normalize_watermark_line(None, 'Fallback', 28) == 'Fallback'

    def test_share_text(self):
        assert build_share_watermark_text('Clip', 'Chan') == 'Clip by Chan Downloaded with dlqueue'
        assert build_share_watermark_text(None, None) == 'Untitled video Unknown author Downloaded with dlqueue'

    def test_drawtext_filter_escapes_paths(self):
        value = build_drawtext_filter(Path('/tmp/a:b.txt'), "/fonts/it's.ttf")
        assert value.startswith('drawtext=textfile=/tmp/a\\:b.txt:')
        assert "fontfile=/fonts/it\\'s.ttf" in value


class TestOutputPaths:

    def test_unsupported_container_becomes_mp4(self):
        output_path, temp_path = resolve_watermark_output_paths(Path('/x/clip.webm'))
        assert output_path == Path('/x/clip.mp4')
        assert temp_path.parent == Path('/x')
        assert temp_path.name.startswith('clip.dlqueue-watermark.')
        assert temp_path.suffix == '.mp4'

    def test_supported_container_is_kept(self):
        output_path, temp_path = resolve_watermark_output_paths(Path('/x/clip.MKV'))
        assert output_path == Path('/x/clip.mkv')
        assert temp_path.suffix == '.mkv'

    def test_replace_existing_output(self, tmp_path):
        output_path = tmp_path / 'clip.mp4'
        temp_path = tmp_path / 'clip.tmp.mp4'
        output_path.write_bytes(b'old')
        temp_path.write_bytes(b'new')

        Transcoder._replace_output(output_path, temp_path)

        assert output_path.read_bytes() == b'new'
        assert sorted(p.name for p in tmp_path.iterdir()) == ['clip.mp4']

    def test_replace_missing_output(self, tmp_path):
        temp_path = tmp_path / 'clip.tmp.mp4'
        temp_path.write_bytes(b'new')

        Transcoder._replace_output(tmp_path / 'clip.mp4', temp_path)

        assert (tmp_path / 'clip.mp4').read_bytes() == b'new'
        assert not temp_path.exists()


class TestApplyShareWatermark:

    @pytest.mark.asyncio
    async def test_success_swaps_in_new_container(self, tmp_path, monkeypatch):
        source = tmp_path / 'clip.webm'
        source.write_bytes(b'original')
        transcoder = Transcoder()
        seen = []

        async def fake_ffmpeg(ffmpeg_path, args):
            seen.append(args)
            Path(args[-1]).write_bytes(b'watermarked')

        monkeypatch.setattr(transcoder, '_run_ffmpeg', fake_ffmpeg)
        final_path, size = await transcoder.apply_share_watermark(source, Path('/usr/bin/ffmpeg'), 'Clip', 'Chan')

        assert final_path == tmp_path / 'clip.mp4'
        assert final_path.read_bytes() == b'watermarked'
        assert size == len(b'watermarked')
        assert not source.exists()
        assert '+faststart' in seen[0]
        assert seen[0][seen[0].index('-i') + 1] == str(source)

    @pytest.mark.asyncio
    async def test_failure_leaves_source_untouched(self, tmp_path, monkeypatch):
        source = tmp_path / 'clip.mp4'
        source.write_bytes(b'original')
        transcoder = Transcoder()

        async def failing_ffmpeg(ffmpeg_path, args):
            Path(args[-1]).write_bytes(b'partial')
            raise TranscodeError("ffmpeg exited with code 1")

        monkeypatch.setattr(transcoder, '_run_ffmpeg', failing_ffmpeg)
        with pytest.raises(TranscodeError):
            await transcoder.apply_share_watermark(source, Path('/usr/bin/ffmpeg'), 'Clip', None)

        assert source.read_bytes() == b'original'
        assert [p.name for p in tmp_path.iterdir()] == ['clip.mp4']
