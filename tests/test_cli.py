"""Tests for CLI interface."""
import pytest
import yaml

from framediffusion import cli
from framediffusion.utils import hardware
from framediffusion.utils.hardware import HostInfo
from framediffusion.cli import EXIT_FATAL, EXIT_FRAMES_FAILED, EXIT_OK, create_parser, main

from conftest import FakeRenderClient


class TestArgumentParsing:
    """Test CLI argument parsing."""

    def test_render_command(self):
        """Test parser handles render command arguments."""
        args = create_parser().parse_args([
            'render',
            '--frames-dir', 'frames/',
            '--prompt', 'oil painting',
            '--gpu-ports', '9000,9001',
            '--hybrid-processing',
            '--max-concurrent', '6',
        ])

        assert args.command == 'render'
        assert args.frames_dir == 'frames/'
        assert args.prompt == 'oil painting'
        assert args.gpu_ports == '9000,9001'
        assert args.hybrid_processing is True
        assert args.cpu_fallback is False
        assert args.sequential is False
        assert args.max_concurrent == 6
        assert args.start_frame == 1
        assert args.end_frame is None

    def test_render_requires_prompt(self):
        """Test render refuses to run without a prompt."""
        with pytest.raises(SystemExit):
            create_parser().parse_args(['render', '--frames-dir', 'frames/'])

    def test_render_rejects_unknown_format(self):
        with pytest.raises(SystemExit):
            create_parser().parse_args([
                'render', '--frames-dir', 'f', '--prompt', 'x', '--output-format', 'gif',
            ])

    def test_probe_command(self):
        args = create_parser().parse_args(['probe', '--cpu-ports', '9010,9011'])
        assert args.command == 'probe'
        assert args.cpu_ports == '9010,9011'
        assert args.func is cli.probe_workers

    def test_config_commands(self):
        args = create_parser().parse_args(['config', 'init', '--project'])
        assert args.func is cli.config_init
        assert args.project is True

    def test_version(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            create_parser().parse_args(['--version'])
        assert exc_info.value.code == 0
        assert 'framediffusion' in capsys.readouterr().out


@pytest.fixture
def isolated_home(tmp_path, monkeypatch):
    """Point user and project config lookups at empty temp directories."""
    home = tmp_path / "home"
    work = tmp_path / "work"
    home.mkdir()
    work.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.chdir(work)
    return work


@pytest.fixture
def fast_config(isolated_home):
    """Config file with no backoff, delays or recency windows."""
    path = isolated_home / "fast.yaml"
    path.write_text(yaml.safe_dump({
        "scheduler": {
            "gpu_retry_backoff": 0,
            "cpu_retry_backoff": 0,
            "dispatch_delay": 0,
            "admission_poll_interval": 0.01,
            "gpu_limits": {"recency_window": 0},
            "cpu_limits": {"recency_window": 0},
        },
    }))
    return path


@pytest.fixture
def fake_client(monkeypatch):
    client = FakeRenderClient()
    monkeypatch.setattr(cli, "RenderClient", lambda poll_interval: client)
    return client


def render_args(frames_dir, output_dir, config, *extra):
    return [
        'render',
        '--frames-dir', str(frames_dir),
        '--prompt', 'oil painting',
        '--output-dir', str(output_dir),
        '--session-id', 'test',
        '--seed', '7',
        '--config', str(config),
        '--max-concurrent', '2',
        *extra,
    ]


class TestRenderCommand:
    """Tests for the render command end to end against a fake client."""

    def test_all_frames_rendered(self, frames_dir, fast_config, fake_client, tmp_path):
        output_dir = tmp_path / "out"
        code = main(render_args(frames_dir, output_dir, fast_config, '--end-frame', '4'))

        assert code == EXIT_OK
        assert sorted(c.frame for c in fake_client.calls) == [1, 2, 3, 4]
        assert sorted(p.name for p in output_dir.iterdir()) == [
            f"test_frame_{i:04d}_7.jpeg" for i in range(1, 5)
        ]
        assert fake_client.max_total_in_flight <= 2

    def test_cli_options_reach_payload(self, frames_dir, fast_config, fake_client, tmp_path):
        main(render_args(
            frames_dir, tmp_path / "out", fast_config,
            '--end-frame', '1', '--steps', '25', '--sampler', 'dpm2', '--width', '640',
        ))

        payload = fake_client.calls[0].payload
        assert payload['num_inference_steps'] == 25
        assert payload['sampler_name'] == 'dpm2'
        assert payload['width'] == 640
        assert payload['seed'] == 7

    def test_host_tier_sets_dispatch_delay(self, frames_dir, isolated_home, fake_client, monkeypatch, tmp_path):
        config_path = isolated_home / "tiered.yaml"
        config_path.write_text(yaml.safe_dump({
            "scheduler": {"gpu_retry_backoff": 0, "gpu_limits": {"recency_window": 0}},
        }))
        monkeypatch.setattr(hardware, "get_host_info", lambda: HostInfo("Linux", 24, 64))
        seen = {}
        real_dispatcher = cli.Dispatcher

        def capture(config, *args):
            seen["config"] = config
            return real_dispatcher(config, *args)

        monkeypatch.setattr(cli, "Dispatcher", capture)

        code = main(render_args(frames_dir, tmp_path / "out", config_path, '--end-frame', '1'))

        assert code == EXIT_OK
        assert seen["config"].dispatch_delay == 0.005
        assert seen["config"].max_concurrent == 2

    def test_failed_frames_exit_code(self, frames_dir, fast_config, monkeypatch, tmp_path):
        client = FakeRenderClient(always_fail={2})
        monkeypatch.setattr(cli, "RenderClient", lambda poll_interval: client)

        code = main(render_args(frames_dir, tmp_path / "out", fast_config, '--end-frame', '3'))

        assert code == EXIT_FRAMES_FAILED
        assert len(client.calls_for(2)) == 3

    def test_sequential_mode(self, frames_dir, fast_config, fake_client, tmp_path):
        code = main(render_args(
            frames_dir, tmp_path / "out", fast_config, '--end-frame', '3', '--sequential',
        ))

        assert code == EXIT_OK
        assert [c.frame for c in fake_client.calls] == [1, 2, 3]
        assert fake_client.max_total_in_flight == 1

    def test_no_workers_is_fatal(self, frames_dir, fast_config, fake_client, monkeypatch, tmp_path):
        monkeypatch.setattr(fake_client, "ping", lambda url, timeout: None)

        code = main(render_args(frames_dir, tmp_path / "out", fast_config))

        assert code == EXIT_FATAL
        assert fake_client.calls == []

    def test_missing_frames_dir_is_fatal(self, fast_config, fake_client, tmp_path):
        code = main(render_args(tmp_path / "missing", tmp_path / "out", fast_config))
        assert code == EXIT_FATAL

    def test_invalid_config_is_fatal(self, frames_dir, isolated_home, fake_client, tmp_path):
        bad = isolated_home / "bad.yaml"
        bad.write_text(yaml.safe_dump({"scheduler": {"max_retries": 0}}))

        code = main(render_args(frames_dir, tmp_path / "out", bad))

        assert code == EXIT_FATAL
        assert fake_client.calls == []


class TestProbeCommand:
    """Tests for the probe command."""

    def test_reports_workers(self, isolated_home, fake_client, capsys):
        code = main(['probe', '--gpu-ports', '9000,9001', '--cpu-ports', '9010'])

        assert code == EXIT_OK
        out = capsys.readouterr().out
        assert 'localhost:9001' in out
        assert 'localhost:9010' in out

    def test_nothing_online(self, isolated_home, fake_client, monkeypatch):
        monkeypatch.setattr(fake_client, "ping", lambda url, timeout: None)
        assert main(['probe']) == EXIT_FATAL


class TestConfigCommands:
    """Tests for config init/show."""

    def test_init_user_config(self, isolated_home, tmp_path):
        assert main(['config', 'init']) == EXIT_OK
        assert (tmp_path / "home" / ".framediffusion" / "config.yaml").exists()

    def test_init_project_config_twice(self, isolated_home):
        assert main(['config', 'init', '--project']) == EXIT_OK
        assert (isolated_home / ".framediffusion.yaml").exists()
        assert main(['config', 'init', '--project']) == EXIT_FATAL
        assert main(['config', 'init', '--project', '--force']) == EXIT_OK

    def test_show(self, isolated_home, capsys):
        (isolated_home / ".framediffusion.yaml").write_text("scheduler:\n  max_retries: 4\n")
        assert main(['config', 'show']) == EXIT_OK
        out = capsys.readouterr().out
        assert 'max_retries: 4' in out
        assert 'No config file found' not in out

    def test_show_without_config_files(self, isolated_home, capsys):
        assert main(['config', 'show']) == EXIT_OK
        out = capsys.readouterr().out
        assert 'No config file found' in out
        assert 'max_retries: 3' in out


class TestMain:
    """Tests for the entry point."""

    def test_no_command_prints_help(self, capsys):
        assert main([]) == EXIT_OK
        assert 'usage' in capsys.readouterr().out.lower()
