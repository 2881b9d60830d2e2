from pathlib import Path

import pytest

from udpmqtt import config as config_module
from udpmqtt.config import find_config_file, load_config
from udpmqtt.errors import ConfigError

VALID = """\
awsClientId: bridge-1
awsIotCert: certs/device.pem.crt
awsIotKey: certs/private.pem.key
awsIotRootCA: certs/AmazonRootCA1.pem
awsIotProtocol: ssl
awsIotEndpoint: example-ats.iot.eu-central-1.amazonaws.com
awsIotPort: 8883
mqttTopicIn: device/in
mqttTopicOut: device/out
udpIpIn: 0.0.0.0
udpPortIn: 9000
udpIpOut: 127.0.0.1
udpPortOut: 9001
"""


def write(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "config.yaml"
    path.write_text(text, encoding="utf-8")
    return path


def test_load_valid_config(tmp_path):
    cfg = load_config(write(tmp_path, VALID))
    assert cfg.client_id == "bridge-1"
    assert cfg.broker_url == "ssl://example-ats.iot.eu-central-1.amazonaws.com:8883"
    assert cfg.uses_tls
    assert (cfg.udp_ip_in, cfg.udp_port_in) == ("0.0.0.0", 9000)
    assert (cfg.udp_ip_out, cfg.udp_port_out) == ("127.0.0.1", 9001)
    assert (cfg.topic_in, cfg.topic_out) == ("device/in", "device/out")
    assert cfg.qos == 0
    assert cfg.ping_type == "com.bosch-engineering.ping"
    assert cfg.correlation_max_entries is None
    assert cfg.correlation_ttl is None


def test_optional_fields(tmp_path):
    text = VALID + "mqttQos: 1\npingType: com.example.ping\ncorrelationMaxEntries: 64\ncorrelationTtl: 30\n"
    cfg = load_config(write(tmp_path, text))
    assert cfg.qos == 1
    assert cfg.ping_type == "com.example.ping"
    assert cfg.correlation_max_entries == 64
    assert cfg.correlation_ttl == 30.0


def test_plain_scheme_needs_no_certificates(tmp_path):
    lines = [l for l in VALID.splitlines() if not l.startswith(("awsIotCert", "awsIotKey", "awsIotRootCA"))]
    text = "\n".join(lines).replace("awsIotProtocol: ssl", "awsIotProtocol: tcp")
    cfg = load_config(write(tmp_path, text))
    assert not cfg.uses_tls
    assert cfg.cert_file is None


def test_missing_file(tmp_path):
    with pytest.raises(ConfigError):
        load_config(tmp_path / "nope.yaml")


def test_invalid_yaml(tmp_path):
    with pytest.raises(ConfigError):
        load_config(write(tmp_path, "awsClientId: [unclosed\n"))


def test_not_a_mapping(tmp_path):
    with pytest.raises(ConfigError):
        load_config(write(tmp_path, "- a\n- b\n"))


@pytest.mark.parametrize(
    "old,new",
    [
        ("mqttTopicOut: device/out\n", ""),
        ("udpPortIn: 9000", "udpPortIn: nine-thousand"),
        ("udpPortOut: 9001", "udpPortOut: 70000"),
        ("awsIotProtocol: ssl", "awsIotProtocol: carrier-pigeon"),
        ("awsIotKey: certs/private.pem.key\n", ""),
        ("awsIotPort: 8883", "awsIotPort: true"),
    ],
)
def test_invalid_fields(tmp_path, old, new):
    assert old in VALID
    with pytest.raises(ConfigError):
        load_config(write(tmp_path, VALID.replace(old, new)))


def test_local_configs_directory_wins(tmp_path, monkeypatch):
    (tmp_path / "configs").mkdir()
    monkeypatch.setattr(config_module, "user_config_dir", lambda: tmp_path / "user")
    assert find_config_file(tmp_path) == tmp_path / "configs" / "config.yaml"


def test_falls_back_to_user_directory(tmp_path, monkeypatch):
    monkeypatch.setattr(config_module, "user_config_dir", lambda: tmp_path / "user")
    assert find_config_file(tmp_path) == tmp_path / "user" / "config.yaml"


def test_user_directory_named_after_app():
    assert config_module.user_config_dir().name == "udp-mqtt-bridge"
