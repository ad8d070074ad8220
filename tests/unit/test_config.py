"""
Unit tests for GraceConfig.
"""

import pytest

from hotrestart.config import GraceConfig, HandoffMode, split_addresses


class TestDefaults:

    def test_defaults_are_valid(self):
        config = GraceConfig()
        config.validate()

        assert config.addresses == ["127.0.0.1:8080"]
        assert config.handoff is HandoffMode.GRACEFUL
        assert config.drain_timeout == 60.0
        assert config.keepalive_period == 180.0

    @pytest.mark.parametrize("timeout, enabled", [(60.0, True), (0, True), (-1, False), (None, False)])
    def test_drain_enabled(self, timeout, enabled):
        assert GraceConfig(drain_timeout=timeout).drain_enabled is enabled


class TestFromEnv:

    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("GRACE_LISTEN", ":8080, :8081")
        monkeypatch.setenv("GRACE_TLS_LISTEN", ":8443")
        monkeypatch.setenv("GRACE_CERT_FILE", "cert.pem")
        monkeypatch.setenv("GRACE_KEY_FILE", "key.pem")
        monkeypatch.setenv("GRACE_DRAIN_TIMEOUT", "-1")
        monkeypatch.setenv("GRACE_HANDOFF", "IMMEDIATE")
        monkeypatch.setenv("GRACE_TIMEOUT", "12")
        monkeypatch.setenv("GRACE_LOG_LEVEL", "DEBUG")

        config = GraceConfig.from_env()

        assert config.addresses == [":8080", ":8081"]
        assert config.tls_addresses == [":8443"]
        assert (config.cert_file, config.key_file) == ("cert.pem", "key.pem")
        assert config.drain_enabled is False
        assert config.handoff is HandoffMode.IMMEDIATE
        assert config.connection_timeout == 12.0
        assert config.log_level == "DEBUG"
        config.validate()

    def test_empty_environment_keeps_defaults(self, monkeypatch):
        for name in ("GRACE_LISTEN", "GRACE_TLS_LISTEN", "GRACE_DRAIN_TIMEOUT", "GRACE_HANDOFF"):
            monkeypatch.delenv(name, raising=False)

        config = GraceConfig.from_env()

        assert config.addresses == GraceConfig().addresses
        assert config.tls_addresses == []

    def test_bad_handoff(self, monkeypatch):
        monkeypatch.setenv("GRACE_HANDOFF", "sometimes")
        with pytest.raises(ValueError):
            GraceConfig.from_env()


class TestValidate:

    @pytest.mark.parametrize("kwargs", [
        {"addresses": []},
        {"addresses": ["no-port"]},
        {"addresses": [":8080", ":8080"]},
        {"addresses": [":8080"], "tls_addresses": [":8080"], "cert_file": "c", "key_file": "k"},
        {"tls_addresses": [":8443"]},
        {"tls_addresses": [":8443"], "cert_file": "c"},
        {"backlog": 0},
        {"connection_timeout": 0},
        {"ready_timeout": 0},
        {"accept_poll_interval": -1},
    ])
    def test_rejects(self, kwargs):
        with pytest.raises(ValueError):
            GraceConfig(**kwargs).validate()

    def test_tls_only(self):
        GraceConfig(addresses=[], tls_addresses=[":8443"], cert_file="c", key_file="k").validate()

    def test_blocking_connections_allowed(self):
        GraceConfig(connection_timeout=None).validate()


def test_split_addresses():
    assert split_addresses(" :8080 ,, [::1]:9000 ") == [":8080", "[::1]:9000"]
    assert split_addresses(None) == []
