"""Tests for the command-line interface."""

import subprocess
import sys
from pathlib import Path
from unittest.mock import patch

import pytest
from conftest import IDENTITY, PROFILE

from pluginpack import (
    ENV_CERT_NAME,
    ENV_KEYCHAIN_PROFILE,
    ENV_TRACE,
    __version__,
    build_parser,
    main,
    prompt_create_dmg,
)

PROJECT_ROOT = Path(__file__).parent.parent


@pytest.fixture
def env(monkeypatch, temp_dir):
    """Credentials in the environment, no .env or config file in play."""
    monkeypatch.chdir(temp_dir)
    monkeypatch.setenv(ENV_CERT_NAME, IDENTITY)
    monkeypatch.setenv(ENV_KEYCHAIN_PROFILE, PROFILE)
    monkeypatch.delenv(ENV_TRACE, raising=False)
    with patch("pluginpack.load_dotenv"):
        yield monkeypatch


def run_main(*argv: str) -> int:
    with pytest.raises(SystemExit) as excinfo:
        main(list(argv))
    return excinfo.value.code


class TestParser:
    """Tests for argument parsing."""

    def test_requires_bundle(self):
        with pytest.raises(SystemExit) as excinfo:
            build_parser().parse_args([])
        assert excinfo.value.code == 2

    def test_defaults(self):
        args = build_parser().parse_args(["Synth.vst3"])
        assert args.bundles == ["Synth.vst3"]
        assert args.dmg is None
        assert args.entitlements is None
        assert not args.dry_run
        assert not args.verbose

    def test_dmg_flags(self):
        assert build_parser().parse_args(["--dmg", "a.vst3"]).dmg is True
        assert build_parser().parse_args(["--no-dmg", "a.vst3"]).dmg is False

    def test_dmg_flags_exclusive(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["--dmg", "--no-dmg", "a.vst3"])

    def test_help_subprocess(self):
        result = subprocess.run(
            [sys.executable, "-m", "pluginpack", "--help"],
            capture_output=True,
            text=True,
            cwd=PROJECT_ROOT,
        )
        assert result.returncode == 0
        assert "--dmg" in result.stdout
        assert ENV_CERT_NAME in result.stdout
        assert ENV_KEYCHAIN_PROFILE in result.stdout

    def test_version_subprocess(self):
        result = subprocess.run(
            [sys.executable, "-m", "pluginpack", "--version"],
            capture_output=True,
            text=True,
            cwd=PROJECT_ROOT,
        )
        assert result.returncode == 0
        assert __version__ in result.stdout


class TestPrompt:
    """Tests for the interactive disk image prompt."""

    def test_option_one(self, capsys):
        assert prompt_create_dmg(lambda _: "1") is False
        assert "Options:" in capsys.readouterr().out

    def test_option_two(self):
        assert prompt_create_dmg(lambda _: " 2 ") is True

    def test_invalid_defaults_to_bundles(self, caplog):
        assert prompt_create_dmg(lambda _: "yes") is False
        assert "Defaulting to bundles only" in caplog.text

    def test_eof_defaults_to_bundles(self):
        def closed(_prompt):
            raise EOFError

        assert prompt_create_dmg(closed) is False


class TestMain:
    """Tests for main() exit codes and flow."""

    def test_missing_credentials(self, env, fake_tools, caplog):
        env.delenv(ENV_CERT_NAME)
        env.delenv(ENV_KEYCHAIN_PROFILE)

        with patch("pluginpack.resolve_input") as mock_resolve:
            assert run_main("--no-dmg", "Synth.vst3") == 1
        mock_resolve.assert_not_called()
        assert fake_tools.calls == []
        assert ENV_CERT_NAME in caplog.text
        assert ENV_KEYCHAIN_PROFILE in caplog.text

    def test_one_missing_credential(self, env, fake_tools, caplog):
        env.delenv(ENV_KEYCHAIN_PROFILE)
        assert run_main("--no-dmg", "Synth.vst3") == 1
        assert fake_tools.calls == []
        assert ENV_KEYCHAIN_PROFILE in caplog.text

    def test_credentials_from_config(self, env, temp_dir, vst3_bundle, fake_tools):
        env.delenv(ENV_CERT_NAME)
        env.delenv(ENV_KEYCHAIN_PROFILE)
        config_file = temp_dir / "signing.toml"
        config_file.write_text(
            "[credentials]\n"
            f'cert_name = "{IDENTITY}"\n'
            f'keychain_profile = "{PROFILE}"\n'
        )

        assert run_main("-c", str(config_file), "--no-dmg", str(vst3_bundle)) == 0
        (submit,) = fake_tools.of_kind("submit")
        assert submit[submit.index("--keychain-profile") + 1] == PROFILE

    def test_bundles_only(self, env, vst3_bundle, fake_tools):
        assert run_main("--no-dmg", str(vst3_bundle)) == 0
        assert len(fake_tools.of_kind("staple")) == 1
        assert fake_tools.of_kind("hdiutil") == []

    def test_with_dmg(self, env, component_bundle, fake_tools):
        assert run_main("--dmg", str(component_bundle)) == 0
        assert (component_bundle.parent / "Synth.dmg").exists()

    def test_prompt_used_without_flag(self, env, app_bundle, fake_tools):
        with patch("builtins.input", return_value="2") as mock_input:
            assert run_main(str(app_bundle)) == 0
        mock_input.assert_called_once()
        assert (app_bundle.parent / "Synth.dmg").exists()

    def test_flag_skips_prompt(self, env, app_bundle, fake_tools):
        with patch("builtins.input") as mock_input:
            run_main("--no-dmg", str(app_bundle))
        mock_input.assert_not_called()

    def test_failure_exit_code(self, env, vst3_bundle, app_bundle, fake_tools):
        fake_tools.failing_targets.add(str(vst3_bundle))
        assert run_main("--no-dmg", str(vst3_bundle), str(app_bundle)) == 1
        # the app is still processed after the vst3 fails
        staples = [Path(c[-1]).name for c in fake_tools.of_kind("staple")]
        assert staples == ["Synth.app"]

    def test_skipped_inputs_do_not_fail(self, env, temp_dir, fake_tools):
        assert run_main("--no-dmg", str(temp_dir / "Missing.vst3")) == 0
        assert fake_tools.calls == []

    def test_missing_entitlements(self, env, vst3_bundle, fake_tools, caplog):
        assert run_main("--no-dmg", "-e", "nope.plist", str(vst3_bundle)) == 1
        assert "Entitlements file not found" in caplog.text
        assert fake_tools.calls == []

    def test_dry_run(self, env, vst3_bundle, fake_tools):
        assert run_main("--dmg", "--dry-run", str(vst3_bundle)) == 0
        assert fake_tools.mutating() == []
        assert not (vst3_bundle.parent / "Synth.dmg").exists()

    def test_keyboard_interrupt(self, env, vst3_bundle):
        with patch("pluginpack.process_inputs", side_effect=KeyboardInterrupt):
            assert run_main("--no-dmg", str(vst3_bundle)) == 130

    def test_trace_env(self, env, vst3_bundle, fake_tools):
        env.setenv(ENV_TRACE, "1")
        with patch("pluginpack.setup_logging") as mock_setup:
            run_main("--no-dmg", str(vst3_bundle))
        mock_setup.assert_called_once_with(True, True)

    def test_verbose_no_color(self, env, vst3_bundle, fake_tools):
        with patch("pluginpack.setup_logging") as mock_setup:
            run_main("--verbose", "--no-color", "--no-dmg", str(vst3_bundle))
        mock_setup.assert_called_once_with(True, False)

    def test_quiet_by_default(self, env, vst3_bundle, fake_tools):
        with patch("pluginpack.setup_logging") as mock_setup:
            run_main("--no-dmg", str(vst3_bundle))
        mock_setup.assert_called_once_with(False, True)
