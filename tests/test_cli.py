"""Tests for CLI commands driving config, probing and serving."""

import io
import json
import socket
import sys
import tempfile
import time
import unittest
from contextlib import redirect_stdout
from pathlib import Path

import typer

from serveman.cli import config_set_policy, config_set_range, config_show, next_port, probe, serve
from serveman.supervisor.serve_config import load_config, save_config

FAKE_SERVE = Path(__file__).parent / "fake_serve.py"


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return int(sock.getsockname()[1])


class CliTests(unittest.TestCase):
    """Validate exit codes and output of CLI commands."""

    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.config_path = Path(self._tmp.name) / "config.json"

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_config_set_range_persists(self) -> None:
        with redirect_stdout(io.StringIO()) as out:
            config_set_range(15000, 15010, config_path=self.config_path)
        self.assertIn("15000-15010", out.getvalue())
        loaded = load_config(self.config_path)
        self.assertEqual((loaded["port_min"], loaded["port_max"]), (15000, 15010))

    def test_config_set_range_rejects_inverted(self) -> None:
        with self.assertRaises(typer.Exit) as cm:
            with redirect_stdout(io.StringIO()):
                config_set_range(15010, 15000, config_path=self.config_path)
        self.assertEqual(cm.exception.exit_code, 1)
        self.assertFalse(self.config_path.exists())

    def test_config_set_policy_rejects_unknown(self) -> None:
        with self.assertRaises(typer.Exit):
            with redirect_stdout(io.StringIO()):
                config_set_policy("sometimes", config_path=self.config_path)
        with redirect_stdout(io.StringIO()):
            config_set_policy("unconditional", config_path=self.config_path)
        self.assertEqual(load_config(self.config_path)["exit_policy"], "unconditional")

    def test_config_show_prints_json(self) -> None:
        with redirect_stdout(io.StringIO()) as out:
            config_show(config_path=self.config_path)
        payload = json.loads(out.getvalue())
        self.assertEqual(payload["port_min"], 14097)

    def test_probe_times_out_on_unbound_port(self) -> None:
        port = _free_port()
        with self.assertRaises(typer.Exit) as cm:
            with redirect_stdout(io.StringIO()) as out:
                probe(port=port, timeout=0.3, host="127.0.0.1", path="/session", json_output=True)
        self.assertEqual(cm.exception.exit_code, 1)
        self.assertEqual(json.loads(out.getvalue())["error_code"], "READINESS_TIMEOUT")

    def test_next_port_fails_when_range_occupied(self) -> None:
        holder = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        holder.bind(("127.0.0.1", 0))
        holder.listen(1)
        port = int(holder.getsockname()[1])
        try:
            save_config(
                {"port_min": port, "port_max": port, "hostname": "127.0.0.1"},
                self.config_path,
            )
            with self.assertRaises(typer.Exit) as cm:
                with redirect_stdout(io.StringIO()) as out:
                    next_port(config_path=self.config_path)
        finally:
            holder.close()
        self.assertEqual(cm.exception.exit_code, 1)
        self.assertIn("No available ports", out.getvalue())

    def test_serve_launches_and_reports_ready_instance(self) -> None:
        port = _free_port()
        save_config(
            {
                "port_min": port,
                "port_max": min(port + 10, 65535),
                "hostname": "127.0.0.1",
                "command": [sys.executable, str(FAKE_SERVE)],
            },
            self.config_path,
        )
        project_dir = Path(self._tmp.name) / "project"
        project_dir.mkdir()
        with redirect_stdout(io.StringIO()) as out:
            serve(
                [project_dir],
                model="gpt-x",
                timeout=10.0,
                wait=True,
                hold=False,
                json_output=True,
                config_path=self.config_path,
            )
        payload = json.loads(out.getvalue())
        self.assertEqual(payload["schema_version"], "instance_list.v1")
        self.assertEqual(len(payload["instances"]), 1)
        instance = payload["instances"][0]
        self.assertEqual(instance["key"], f"{project_dir.resolve()}:gpt-x")
        self.assertEqual(instance["status"], "running")

    def test_serve_reports_spawn_failure_without_waiting_out_timeout(self) -> None:
        port = _free_port()
        save_config(
            {
                "port_min": port,
                "port_max": min(port + 10, 65535),
                "hostname": "127.0.0.1",
                "command": ["/nonexistent/serveman-missing-binary"],
            },
            self.config_path,
        )
        project_dir = Path(self._tmp.name) / "project"
        project_dir.mkdir()
        started = time.monotonic()
        with self.assertRaises(typer.Exit) as cm:
            with redirect_stdout(io.StringIO()) as out:
                serve(
                    [project_dir],
                    model=None,
                    timeout=30.0,
                    wait=True,
                    hold=False,
                    json_output=True,
                    config_path=self.config_path,
                )
        self.assertLess(time.monotonic() - started, 10)
        self.assertEqual(cm.exception.exit_code, 1)
        self.assertEqual(json.loads(out.getvalue())["error_code"], "SPAWN_FAILED")


if __name__ == "__main__":
    unittest.main()
