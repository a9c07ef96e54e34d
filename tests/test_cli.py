import argparse

import pytest

from copilotgw.cli import apply_overrides, build_parser, parse_port
from copilotgw.config import ConfigError, Settings


@pytest.mark.parametrize("value,expected", [("11437", 11437), (":11438", 11438), ("0.0.0.0:8443", 8443)])
def test_parse_port_accepts_address_forms(value, expected):
    assert parse_port(value) == expected


@pytest.mark.parametrize("value", ["", "port", ":99999"])
def test_parse_port_rejects_invalid(value):
    with pytest.raises(argparse.ArgumentTypeError):
        parse_port(value)


def test_flags_override_configuration():
    parser = build_parser()
    args = parser.parse_args(
        [
            "start",
            "--port", ":9000",
            "--port-ssl", ":9001",
            "--proxy-port", ":9002",
            "--proxy-port-ssl", ":9003",
            "--cert", "server.crt",
            "--key", "server.key",
            "--model", "codellama:7b-code",
            "--num-predict", "64",
            "--prompt-template", "<PRE> {{ prefix }} <SUF>{{ suffix }} <MID>",
            "--verbose",
        ]
    )
    settings = apply_overrides(Settings(), args)
    assert settings.listen.port == 9000
    assert settings.listen.tls_port == 9001
    assert settings.proxy.port == 9002
    assert settings.proxy.tls_port == 9003
    assert settings.tls.configured
    assert settings.backend.model == "codellama:7b-code"
    assert settings.backend.num_predict == 64
    assert settings.completion.prompt_template.startswith("<PRE>")
    assert settings.logging.level == "DEBUG"


def test_defaults_left_untouched_without_flags():
    args = build_parser().parse_args([])
    assert apply_overrides(Settings(), args) == Settings()


def test_no_proxy_flag_disables_relays():
    args = build_parser().parse_args(["start", "--no-proxy"])
    assert apply_overrides(Settings(), args).proxy.enabled is False


def test_non_positive_num_predict_rejected():
    args = build_parser().parse_args(["start", "--num-predict", "0"])
    with pytest.raises(ConfigError):
        apply_overrides(Settings(), args)
