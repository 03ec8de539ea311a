from __future__ import annotations

import pytest
from pydantic import ValidationError

from relay.config import Settings, load_settings


def test_defaults():
    s = Settings()
    assert s.base_port == 8554
    assert s.port_count == 1000
    assert s.last_port == 9553
    assert s.engine == "ffmpeg"
    assert s.snapshot_interval_s == 5.0


def test_env_prefix(monkeypatch):
    monkeypatch.setenv("RELAY_BASE_PORT", "10000")
    monkeypatch.setenv("RELAY_ENGINE", "gstreamer")
    s = Settings()
    assert s.base_port == 10000
    assert s.engine == "gstreamer"


class TestValidation:

    def test_api_port_inside_range(self):
        with pytest.raises(ValidationError, match="overlaps"):
            Settings(base_port=3000, port_count=10, api_port=3005)

    def test_range_past_65535(self):
        with pytest.raises(ValidationError, match="outside"):
            Settings(base_port=65000, port_count=1000)

    def test_zero_ports(self):
        with pytest.raises(ValidationError, match="port_count"):
            Settings(port_count=0)

    def test_negative_grace(self):
        with pytest.raises(ValidationError):
            Settings(launch_grace_s=-1)

    def test_unknown_engine(self):
        with pytest.raises(ValidationError):
            Settings(engine="vlc")


class TestLoadSettings:

    def test_no_file(self):
        assert load_settings(None).base_port == 8554

    def test_yaml_overrides(self, tmp_path):
        p = tmp_path / "relay.yaml"
        p.write_text("base_port: 20000\nport_count: 16\npublic_host: relay.example\n")
        s = load_settings(str(p))
        assert s.base_port == 20000
        assert s.last_port == 20015
        assert s.public_host == "relay.example"

    def test_yaml_wins_over_env(self, tmp_path, monkeypatch):
        monkeypatch.setenv("RELAY_PUBLIC_HOST", "from-env")
        monkeypatch.setenv("RELAY_OUTPUT_HOST", "env-only")
        p = tmp_path / "relay.yaml"
        p.write_text("public_host: from-file\n")
        s = load_settings(str(p))
        assert s.public_host == "from-file"
        assert s.output_host == "env-only"

    def test_empty_file(self, tmp_path):
        p = tmp_path / "relay.yaml"
        p.write_text("")
        assert load_settings(str(p)).api_port == 3000

    def test_non_mapping_rejected(self, tmp_path):
        p = tmp_path / "relay.yaml"
        p.write_text("- 1\n- 2\n")
        with pytest.raises(ValueError, match="mapping"):
            load_settings(str(p))

    def test_invalid_values_rejected(self, tmp_path):
        p = tmp_path / "relay.yaml"
        p.write_text("base_port: 2990\nport_count: 20\n")
        with pytest.raises(ValidationError):
            load_settings(str(p))
