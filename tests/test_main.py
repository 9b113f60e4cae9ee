import pytest

from main import build_request_fields, parse_args


class TestCommandLine:

    def test_defaults(self):
        args = parse_args(['https://a'])
        assert args.urls == ['https://a']
        assert not args.playlist
        assert build_request_fields(args) == {'type': 'video'}

    def test_request_fields(self):
        args = parse_args([
            '-a', '-f', '251', '--start-time', '0:10', '--end-time', '0:20',
            '-o', '/tmp/out', '-t', '%(id)s.%(ext)s', 'https://a'
        ])
        assert build_request_fields(args) == {
            'type': 'audio',
            'format': '251',
            'start_time': '0:10',
            'end_time': '0:20',
            'custom_download_path': '/tmp/out',
            'custom_filename_template': '%(id)s.%(ext)s',
        }

    def test_playlist_options(self):
        args = parse_args(['-p', '--start', '3', '--end', '5', '-j', '2', '--no-restore', 'https://list'])
        assert args.playlist
        assert (args.start, args.end, args.max_concurrent) == (3, 5, 2)
        assert args.no_restore

    def test_version_exits(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            parse_args(['--version'])
        assert exc_info.value.code == 0
        assert 'dlqueue' in capsys.readouterr().out
