"""Tests for igor.config."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta, timezone
from pathlib import Path

import pytest
import yaml

from igor.config import IgorConfig, UserEntry, load_config, parse_moment


def _write_config(tmp_path: Path, data) -> Path:
    path = tmp_path / "igor.yaml"
    path.write_text(yaml.dump(data) if not isinstance(data, str) else data)
    return path


# ---------------------------------------------------------------------------
# parse_moment
# ---------------------------------------------------------------------------


class TestParseMoment:
    def test_iso_string_with_z(self):
        assert parse_moment("2020-01-02T15:04:00Z") == datetime(
            2020, 1, 2, 15, 4, tzinfo=UTC
        )

    def test_naive_string_is_utc(self):
        moment = parse_moment("2020-01-02 15:04:00")
        assert moment.tzinfo is UTC

    def test_offset_preserved(self):
        moment = parse_moment("2020-01-02T15:04:00+02:00")
        assert moment.utcoffset() == timedelta(hours=2)

    def test_datetime_passthrough(self):
        tz = timezone(timedelta(hours=1))
        value = datetime(2020, 1, 2, 15, 4, tzinfo=tz)
        assert parse_moment(value) is value

    def test_date_is_midnight_utc(self):
        from datetime import date

        assert parse_moment(date(2020, 1, 2)) == datetime(2020, 1, 2, tzinfo=UTC)

    def test_rejects_other_types(self):
        with pytest.raises(ValueError, match="Not a timestamp"):
            parse_moment(12)

    def test_rejects_garbage(self):
        with pytest.raises(ValueError):
            parse_moment("next tuesday")


# ---------------------------------------------------------------------------
# UserEntry.resolve_token
# ---------------------------------------------------------------------------


class TestResolveToken:
    def test_inline_token(self):
        assert UserEntry(identity="a", flowdock_token="t1").resolve_token() == "t1"

    def test_token_from_env(self, monkeypatch):
        monkeypatch.setenv("FD_TOKEN_A", "t2")
        entry = UserEntry(identity="a", token_env="FD_TOKEN_A")
        assert entry.resolve_token() == "t2"

    def test_token_env_missing(self, monkeypatch):
        monkeypatch.delenv("FD_TOKEN_A", raising=False)
        entry = UserEntry(identity="a", token_env="FD_TOKEN_A")
        with pytest.raises(ValueError, match="FD_TOKEN_A not set"):
            entry.resolve_token()

    def test_no_token(self):
        with pytest.raises(ValueError, match="No flowdock token"):
            UserEntry(identity="a").resolve_token()


# ---------------------------------------------------------------------------
# load_config
# ---------------------------------------------------------------------------


class TestLoadConfig:
    def test_full_config(self, tmp_path: Path, monkeypatch):
        monkeypatch.delenv("IGOR_SITE_LOCATION", raising=False)
        path = _write_config(
            tmp_path,
            """
site_location: https://igor.example.com
mention_limit: 25
state_path: /var/lib/igor/state.json
users:
  - identity: alice
    flowdock_username: alice.w
    flowdock_token: secret
    message_format: "Away {{.From}} - {{.Until}}"
    active_from: 2020-01-02T15:04:00Z
    active_until: "2020-01-03T16:00:00+00:00"
    unknown_key: ignored
""",
        )

        config = load_config(path)

        assert config.site_location == "https://igor.example.com"
        assert config.mention_limit == 25
        assert config.state_path == "/var/lib/igor/state.json"
        assert len(config.users) == 1
        user = config.users[0]
        assert user.identity == "alice"
        assert user.flowdock_username == "alice.w"
        assert user.flowdock_token == "secret"
        assert user.message_format == "Away {{.From}} - {{.Until}}"
        assert user.active_from == datetime(2020, 1, 2, 15, 4, tzinfo=UTC)
        assert user.active_until == datetime(2020, 1, 3, 16, 0, tzinfo=UTC)

    def test_username_defaults_to_identity(self, tmp_path: Path):
        path = _write_config(tmp_path, {"users": [{"identity": "bob"}]})
        assert load_config(path).users[0].flowdock_username == "bob"

    def test_entries_without_identity_skipped(self, tmp_path: Path):
        path = _write_config(
            tmp_path,
            {"users": [{"flowdock_token": "x"}, "junk", {"identity": "bob"}]},
        )
        assert [u.identity for u in load_config(path).users] == ["bob"]

    def test_defaults(self, tmp_path: Path, monkeypatch):
        monkeypatch.delenv("IGOR_SITE_LOCATION", raising=False)
        path = _write_config(tmp_path, {"users": []})
        config = load_config(path)
        assert config.site_location == ""
        assert config.mention_limit == 10
        assert config.state_path == "igor-state.json"
        assert config.users == []

    def test_non_mapping_returns_default(self, tmp_path: Path):
        path = _write_config(tmp_path, "- just\n- a list\n")
        assert load_config(path) == IgorConfig()

    def test_site_location_env_override(self, tmp_path: Path, monkeypatch):
        monkeypatch.setenv("IGOR_SITE_LOCATION", "https://env.example.com")
        path = _write_config(tmp_path, {"site_location": "https://file.example.com"})
        assert load_config(path).site_location == "https://env.example.com"

    def test_bad_timestamp_raises(self, tmp_path: Path):
        path = _write_config(
            tmp_path, {"users": [{"identity": "bob", "active_from": "soon"}]}
        )
        with pytest.raises(ValueError):
            load_config(path)

    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nope.yaml")

    def test_malformed_yaml(self, tmp_path: Path):
        path = _write_config(tmp_path, "users: [unclosed\n")
        with pytest.raises(yaml.YAMLError):
            load_config(path)
