"""
Tests for the salesync command-line interface.
"""
import json
import os

import pytest
from unittest.mock import patch

from conftest import FakeSource, catalog_item
from salesync import cli
from salesync.errors import ConfigError
from salesync.sink import MemorySink


@pytest.fixture
def run_cli():
    """Run main() with make_worker patched to return the given worker."""
    def _run(worker, *argv):
        with patch('salesync.cli.make_worker', return_value=worker) as factory:
            code = cli.main(list(argv))
        return code, factory
    return _run


class TestCommands:

    def test_tick_when_idle(self, run_cli, make_worker, capsys):
        code, factory = run_cli(make_worker(FakeSource()), 'tick', '--platform', 'shopify')
        assert code == 0
        factory.assert_called_once_with('shopify')
        assert "IDLE" in capsys.readouterr().out

    def test_start_runs_job(self, run_cli, make_worker, example_source, capsys):
        sink = MemorySink()
        code, _ = run_cli(make_worker(example_source, sink=sink), 'start', '-p', 'shopify')
        assert code == 0
        assert "COMPLETED" in capsys.readouterr().out
        assert sink.get_summary('shopify')['total_revenue'] == 40.0

    def test_failed_tick_exit_code(self, run_cli, make_worker):
        source = FakeSource(catalog=[catalog_item('A')], failures={'catalog:0': RuntimeError("boom")})
        code, _ = run_cli(make_worker(source), 'start', '--platform', 'shopify')
        assert code == 1

    def test_status_prints_json(self, run_cli, make_worker, capsys):
        code, _ = run_cli(make_worker(FakeSource()), 'status', '--platform', 'shopify')
        assert code == 0
        status = json.loads(capsys.readouterr().out)
        assert status['worker_status'] == 'IDLE'
        assert status['checkpoint'] is None

    def test_reset(self, run_cli, make_worker, capsys):
        code, _ = run_cli(make_worker(FakeSource()), 'reset', '--platform', 'shopify')
        assert code == 0
        assert "Reset shopify" in capsys.readouterr().out

    def test_export(self, run_cli, make_worker, example_source, tmp_path):
        worker = make_worker(example_source)
        worker.start()

        code, _ = run_cli(worker, 'export', '--platform', 'shopify',
                          '--output-dir', str(tmp_path), '--output-file', 'shopify.csv')

        assert code == 0
        assert os.path.exists(tmp_path / 'shopify.csv')

    def test_export_with_no_rows(self, run_cli, make_worker, tmp_path):
        code, _ = run_cli(make_worker(FakeSource()), 'export', '-p', 'shopify', '--output-dir', str(tmp_path))
        assert code == 1


class TestRunLoop:

    def test_ticks_until_complete(self, run_cli, make_worker, example_source, clock):
        example_source.on_fetch = lambda cursor: clock.advance(60)
        worker = make_worker(example_source)

        code, _ = run_cli(worker, 'run', '--platform', 'shopify', '--start', '--interval', '120')

        assert code == 0
        assert worker.store.get_checkpoint() is None
        assert clock.sleeps and set(clock.sleeps) == {120}

    def test_retries_after_failure(self, run_cli, make_worker, example_source, clock):
        example_source.failures = {'events:0': RuntimeError("connection reset")}
        code, _ = run_cli(make_worker(example_source), 'run', '-p', 'shopify', '--start')
        assert code == 0
        assert clock.sleeps == [cli.DEFAULT_RUN_INTERVAL]

    def test_max_ticks(self, run_cli, make_worker, example_source, clock, capsys):
        example_source.on_fetch = lambda cursor: clock.advance(60)
        code, _ = run_cli(make_worker(example_source), 'run', '-p', 'shopify', '--start', '--max-ticks', '2')
        assert code == 1
        assert "Stopped after 2 ticks" in capsys.readouterr().out

    def test_idle_worker_stops_immediately(self, run_cli, make_worker, clock):
        code, _ = run_cli(make_worker(FakeSource()), 'run', '-p', 'shopify')
        assert code == 0
        assert clock.sleeps == []


class TestErrors:

    def test_config_error_exit_code(self, capsys):
        with patch('salesync.cli.make_worker', side_effect=ConfigError("SHOPIFY_ACCESS_TOKEN not found")):
            code = cli.main(['tick', '--platform', 'shopify'])
        assert code == 2
        assert "SHOPIFY_ACCESS_TOKEN" in capsys.readouterr().err

    def test_unknown_platform_rejected(self):
        with pytest.raises(SystemExit) as exc_info:
            cli.main(['tick', '--platform', 'magento'])
        assert exc_info.value.code == 2

    def test_command_required(self):
        with pytest.raises(SystemExit):
            cli.main([])
