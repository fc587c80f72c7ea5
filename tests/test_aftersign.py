"""Tests for the post-sign notarization hook."""

import json
from pathlib import Path
from unittest.mock import patch

import pytest

import aftersign
from aftersign import (
    NotarizationContext,
    after_sign,
    notarize_mac_build,
    read_context,
)
from ebwrapper import ConfigurationError


TEAM = {"AC_TEAM_ID": "TEAM123456"}
CREDENTIALS = {"AC_USERNAME": "me@example.com", "AC_PASSWORD": "pw", **TEAM}


def make_context(*targets, app_out_dir="dist/mac", product="Scratch 3"):
    return NotarizationContext(Path(app_out_dir), product, tuple(targets))


@pytest.fixture
def mock_notarize():
    with patch.object(aftersign, "notarize") as mocked:
        yield mocked


class TestNotarizationContext:
    """Tests for reading electron-builder's afterSign context."""

    def test_from_dict(self):
        context = NotarizationContext.from_dict(
            {
                "appOutDir": "dist/mac-arm64",
                "packager": {"appInfo": {"productFilename": "Scratch 3"}},
                "targets": [{"name": "dmg"}, {"name": "zip"}],
            }
        )
        assert context.app_out_dir == Path("dist/mac-arm64")
        assert context.product_filename == "Scratch 3"
        assert context.targets == ("dmg", "zip")

    def test_targets_as_strings(self):
        context = NotarizationContext.from_dict(
            {
                "appOutDir": "out",
                "packager": {"appInfo": {"productFilename": "App"}},
                "targets": ["mas"],
            }
        )
        assert context.targets == ("mas",)

    def test_app_path(self):
        context = make_context("dmg")
        assert context.app_path == Path("dist/mac") / "Scratch 3.app"

    def test_missing_key(self):
        with pytest.raises(ConfigurationError, match="Malformed"):
            NotarizationContext.from_dict({"appOutDir": "out", "targets": []})

    def test_no_targets(self):
        with pytest.raises(ConfigurationError, match="no targets"):
            NotarizationContext.from_dict(
                {
                    "appOutDir": "out",
                    "packager": {"appInfo": {"productFilename": "App"}},
                    "targets": [],
                }
            )


class TestReadContext:
    """Tests for loading the context JSON."""

    def test_from_file(self, tmp_path):
        path = tmp_path / "context.json"
        path.write_text(
            json.dumps(
                {
                    "appOutDir": "out",
                    "packager": {"appInfo": {"productFilename": "App"}},
                    "targets": [{"name": "dmg"}],
                }
            )
        )
        assert read_context(str(path)).targets == ("dmg",)

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "context.json"
        path.write_text("{not json")
        with pytest.raises(ConfigurationError, match="Invalid"):
            read_context(str(path))

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="Cannot read"):
            read_context(str(tmp_path / "missing.json"))

    def test_not_an_object(self, tmp_path):
        path = tmp_path / "context.json"
        path.write_text("[]")
        with pytest.raises(ConfigurationError, match="JSON object"):
            read_context(str(path))


class TestAfterSign:
    """Tests for dispatching on the built target."""

    @pytest.mark.parametrize("target", ["mas", "mas-dev"])
    def test_app_store_targets_not_notarized(self, target, mock_notarize):
        environ = {"AC_USERNAME": "me@example.com"}
        assert after_sign(make_context(target), environ=environ) is False
        mock_notarize.assert_not_called()

    def test_other_targets_ignored(self, mock_notarize):
        environ = {"AC_USERNAME": "me@example.com"}
        assert after_sign(make_context("zip"), environ=environ) is False
        mock_notarize.assert_not_called()

    def test_dmg_notarized(self, mock_notarize):
        environ = CREDENTIALS
        assert after_sign(make_context("dmg"), environ=environ) is True
        mock_notarize.assert_called_once()

    def test_mixed_target_types_rejected(self, mock_notarize):
        with pytest.raises(ConfigurationError, match="mixing target types"):
            after_sign(make_context("mas", "dmg"), environ={})
        mock_notarize.assert_not_called()

    def test_same_type_several_architectures(self, mock_notarize):
        environ = CREDENTIALS
        context = make_context("dmg:x64", "dmg:arm64")
        assert after_sign(context, environ=environ) is True


class TestNotarizeMacBuild:
    """Tests for Apple ID handling."""

    def test_missing_apple_id_warns(self, mock_notarize, caplog):
        assert notarize_mac_build(make_context("dmg"), environ={}) is False
        mock_notarize.assert_not_called()
        assert "not notarized" in caplog.text
        assert "AC_USERNAME" in caplog.text
        assert any(r.levelname == "WARNING" for r in caplog.records)

    def test_password_from_environment(self, mock_notarize, caplog):
        caplog.set_level("INFO")
        environ = {
            "AC_USERNAME": "me@example.com",
            "AC_PASSWORD": "secret",
            **TEAM,
        }
        notarize_mac_build(make_context("dmg"), environ=environ)

        kwargs = mock_notarize.call_args[1]
        assert kwargs["apple_id"] == "me@example.com"
        assert kwargs["apple_id_password"] == "secret"
        assert "and a password" in caplog.text
        assert "secret" not in caplog.text

    def test_keychain_reference_fallback(self, mock_notarize, caplog):
        caplog.set_level("INFO")
        environ = {"AC_USERNAME": "me@example.com", **TEAM}
        notarize_mac_build(make_context("dmg"), environ=environ)

        kwargs = mock_notarize.call_args[1]
        assert (
            kwargs["apple_id_password"]
            == "@keychain:Application Loader: me@example.com"
        )
        assert 'keychain item "Application Loader: me@example.com"' in caplog.text

    def test_app_path_and_id(self, mock_notarize):
        environ = CREDENTIALS
        notarize_mac_build(
            make_context("dmg", app_out_dir="out/mac", product="My App"),
            environ=environ,
        )
        kwargs = mock_notarize.call_args[1]
        assert kwargs["app_path"] == Path("out/mac/My App.app")
        assert kwargs["app_bundle_id"] == "edu.mit.scratch.scratch-desktop"

    def test_custom_app_id(self, mock_notarize):
        environ = CREDENTIALS
        notarize_mac_build(
            make_context("dmg"), app_id="org.example.app", environ=environ
        )
        assert mock_notarize.call_args[1]["app_bundle_id"] == "org.example.app"

    def test_reads_process_environment(self, mock_notarize, monkeypatch):
        monkeypatch.setenv("AC_USERNAME", "env@example.com")
        monkeypatch.setenv("AC_TEAM_ID", "TEAM123456")
        monkeypatch.delenv("AC_PASSWORD", raising=False)
        notarize_mac_build(make_context("dmg"))
        assert mock_notarize.call_args[1]["apple_id"] == "env@example.com"

    def test_team_id_from_environment(self, mock_notarize):
        notarize_mac_build(make_context("dmg"), environ=CREDENTIALS)
        assert mock_notarize.call_args[1]["team_id"] == "TEAM123456"

    def test_team_id_argument_wins(self, mock_notarize):
        notarize_mac_build(
            make_context("dmg"), environ=CREDENTIALS, team_id="OTHERTEAM1"
        )
        assert mock_notarize.call_args[1]["team_id"] == "OTHERTEAM1"

    def test_missing_team_id(self, mock_notarize):
        environ = {"AC_USERNAME": "me@example.com", "AC_PASSWORD": "pw"}
        with pytest.raises(ConfigurationError, match="AC_TEAM_ID"):
            notarize_mac_build(make_context("dmg"), environ=environ)
        mock_notarize.assert_not_called()
