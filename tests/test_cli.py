"""Tests for the effectloom CLI.

Tests cover:
- Main app (--help, --version)
- Plugin commands (list, info, install, uninstall, reload, toggle, load, cleanup)
- Config commands (show)
"""

from __future__ import annotations

import os
import subprocess
import sys
import textwrap
import time
from pathlib import Path

import pytest
from typer.testing import CliRunner

from effectloom.cli import app
from effectloom.plugins.store import PluginConfigStore, PluginDescriptor


REPO_ROOT = Path(__file__).resolve().parents[1]


SPARK_PLUGIN = """
class Spark:
    pass


def register(effects):
    effects.register_global(Spark, "secondary")
"""


# ===========================================================================
# Fixtures
# ===========================================================================


@pytest.fixture
def runner() -> CliRunner:
    """Create a CliRunner for testing."""
    return CliRunner()


@pytest.fixture
def data_dir(tmp_path, monkeypatch):
    """Point the CLI at an isolated data directory with no engine."""
    data = tmp_path / "data"
    monkeypatch.setenv("EFFECTLOOM_DATA_DIR", str(data))
    monkeypatch.setenv("EFFECTLOOM_ENGINE_PACKAGE", "")
    monkeypatch.setenv("EFFECTLOOM_SHARED_PACKAGES", "[]")
    monkeypatch.chdir(tmp_path)
    return data


@pytest.fixture
def spark(tmp_path):
    plugin = tmp_path / "spark"
    plugin.mkdir()
    (plugin / "plugin.py").write_text(textwrap.dedent(SPARK_PLUGIN))
    return plugin


def configured(data_dir, *descriptors):
    store = PluginConfigStore(data_dir)
    for d in descriptors:
        store.add_plugin(d)
    return store


# ===========================================================================
# Main App Tests
# ===========================================================================


class TestMainApp:
    """Tests for main CLI app."""

    def test_help_works(self, runner):
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        assert "plugin" in result.output

    def test_version_works(self, runner):
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert "effectloom version" in result.output

    def test_no_args_shows_help(self, runner):
        result = runner.invoke(app, [])
        assert result.exit_code in (0, 2)
        assert "Usage" in result.output


# ===========================================================================
# Plugin Commands
# ===========================================================================


class TestPluginList:
    """Tests for `plugin list` and `plugin info`."""

    def test_empty(self, runner, data_dir):
        result = runner.invoke(app, ["plugin", "list"])
        assert result.exit_code == 0
        assert "No plugins configured" in result.output

    def test_simple(self, runner, data_dir):
        configured(
            data_dir,
            PluginDescriptor(name="a", source_path="/a"),
            PluginDescriptor(name="b", source_path="/b", enabled=False),
        )
        result = runner.invoke(app, ["plugin", "list", "--format", "simple"])
        assert "a (enabled)" in result.output
        assert "b (disabled)" in result.output

    def test_enabled_only(self, runner, data_dir):
        configured(
            data_dir,
            PluginDescriptor(name="a", source_path="/a"),
            PluginDescriptor(name="b", source_path="/b", enabled=False),
        )
        result = runner.invoke(app, ["plugin", "list", "-e", "-f", "simple"])
        assert "a (enabled)" in result.output
        assert "b (" not in result.output

    def test_json(self, runner, data_dir):
        configured(data_dir, PluginDescriptor(name="a", source_path="/a"))
        result = runner.invoke(app, ["plugin", "list", "--format", "json"])
        assert result.exit_code == 0
        assert '"name": "a"' in result.output

    def test_info(self, runner, data_dir):
        configured(data_dir, PluginDescriptor(name="a", source_path="/a", version="1.0"))
        result = runner.invoke(app, ["plugin", "info", "a"])
        assert result.exit_code == 0
        assert "1.0" in result.output

    def test_info_unknown(self, runner, data_dir):
        result = runner.invoke(app, ["plugin", "info", "ghost"])
        assert result.exit_code == 1


class TestPluginLifecycle:
    """Tests for install, uninstall, reload, toggle, load and cleanup."""

    def test_install(self, runner, data_dir, spark):
        result = runner.invoke(app, ["plugin", "install", str(spark), "--quiet"])

        assert result.exit_code == 0, result.output
        assert "Installed spark" in result.output
        assert "Spark" in result.output
        assert PluginConfigStore(data_dir).get_plugin("spark") is not None

    def test_install_with_name(self, runner, data_dir, spark):
        result = runner.invoke(app, ["plugin", "install", str(spark), "-n", "sparkles", "-q"])
        assert result.exit_code == 0, result.output
        assert PluginConfigStore(data_dir).get_plugin("sparkles") is not None

    def test_install_invalid(self, runner, data_dir, tmp_path):
        result = runner.invoke(app, ["plugin", "install", str(tmp_path / "missing"), "-q"])
        assert result.exit_code == 1
        assert PluginConfigStore(data_dir).get_plugins() == []

    def test_uninstall_force(self, runner, data_dir, spark):
        runner.invoke(app, ["plugin", "install", str(spark), "-q"])

        result = runner.invoke(app, ["plugin", "uninstall", "spark", "--force"])

        assert result.exit_code == 0, result.output
        assert "Uninstalled spark" in result.output
        assert PluginConfigStore(data_dir).get_plugin("spark") is None
        assert spark.exists()

    def test_uninstall_cancelled(self, runner, data_dir, spark):
        configured(data_dir, PluginDescriptor(name="spark", source_path=str(spark)))

        result = runner.invoke(app, ["plugin", "uninstall", "spark"], input="n\n")

        assert result.exit_code == 0
        assert "Cancelled" in result.output
        assert PluginConfigStore(data_dir).get_plugin("spark") is not None

    def test_uninstall_delete_source(self, runner, data_dir, spark):
        configured(data_dir, PluginDescriptor(name="spark", source_path=str(spark)))

        result = runner.invoke(app, ["plugin", "uninstall", "spark", "-f", "--delete-source"])

        assert result.exit_code == 0, result.output
        assert not spark.exists()

    def test_uninstall_unknown(self, runner, data_dir):
        result = runner.invoke(app, ["plugin", "uninstall", "ghost", "-f"])
        assert result.exit_code == 1

    def test_toggle(self, runner, data_dir):
        configured(data_dir, PluginDescriptor(name="a", source_path="/a"))
        result = runner.invoke(app, ["plugin", "toggle", "a"])
        assert result.exit_code == 0
        assert "disabled" in result.output
        assert not PluginConfigStore(data_dir).get_plugin("a").enabled

    def test_toggle_unknown(self, runner, data_dir):
        assert runner.invoke(app, ["plugin", "toggle", "ghost"]).exit_code == 1

    def test_reload(self, runner, data_dir, spark):
        configured(data_dir, PluginDescriptor(name="spark", source_path=str(spark)))
        result = runner.invoke(app, ["plugin", "reload", "spark", "-q"])
        assert result.exit_code == 0, result.output
        assert "Reloaded spark" in result.output

    def test_load(self, runner, data_dir, spark):
        configured(data_dir, PluginDescriptor(name="spark", source_path=str(spark)))
        result = runner.invoke(app, ["plugin", "load"])
        assert result.exit_code == 0, result.output
        assert "1 loaded, 0 failed" in result.output

    def test_load_failure_exit_code(self, runner, data_dir, spark):
        configured(
            data_dir,
            PluginDescriptor(name="spark", source_path=str(spark)),
            PluginDescriptor(name="gone", source_path="/nonexistent"),
        )
        result = runner.invoke(app, ["plugin", "load", "--format", "json"])
        assert result.exit_code == 1
        assert '"loaded"' in result.output

    def test_load_returns_when_import_hangs(self, data_dir, tmp_path):
        hung = tmp_path / "hung"
        hung.mkdir()
        (hung / "plugin.py").write_text("import time\ntime.sleep(120)\n\ndef register(effects):\n    pass\n")
        configured(data_dir, PluginDescriptor(name="hung", source_path=str(hung)))
        env = {
            **os.environ,
            "EFFECTLOOM_IMPORT_TIMEOUT": "0.5",
            "PYTHONPATH": os.pathsep.join(filter(None, [str(REPO_ROOT), os.environ.get("PYTHONPATH")])),
        }

        started = time.monotonic()
        proc = subprocess.run(
            [sys.executable, "-c", "from effectloom.cli import cli; cli()", "plugin", "load", "--format", "json"],
            capture_output=True,
            text=True,
            env=env,
            cwd=tmp_path,
            timeout=60,
        )
        elapsed = time.monotonic() - started

        assert proc.returncode == 1, proc.stderr
        assert '"failed"' in proc.stdout
        assert '"hung"' in proc.stdout
        assert elapsed < 30

    def test_cleanup(self, runner, data_dir):
        result = runner.invoke(app, ["plugin", "cleanup"])
        assert result.exit_code == 0, result.output
        assert "Removed 0 processed" in result.output


# ===========================================================================
# Config Commands
# ===========================================================================


class TestConfigShow:
    def test_json(self, runner, data_dir):
        result = runner.invoke(app, ["config", "show", "--format", "json"])
        assert result.exit_code == 0
        assert "DEPENDENCY_DIRNAME" in result.output

    def test_table(self, runner, data_dir):
        result = runner.invoke(app, ["config", "show"])
        assert result.exit_code == 0
        assert "DATA_DIR" in result.output
