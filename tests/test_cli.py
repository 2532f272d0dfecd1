import json

import pytest
from click.testing import CliRunner

from shelly_smart_plug_exporter import (
    ConfigError,
    load_config_file,
    main,
    parse_listen_address,
    to_device_entries,
)


def test_help():
    result = CliRunner().invoke(main, ["--help"])

    assert result.exit_code == 0
    assert "--ip-addr" in result.output
    assert "--hostname-ip-mapping" in result.output


def test_duplicate_address_fails_startup():
    result = CliRunner().invoke(main, ["-i", "10.0.0.1 10.0.0.1", "-p", "0"])

    assert result.exit_code != 0
    assert "10.0.0.1" in result.output
    assert "more than once" in result.output


def test_invalid_address_fails_startup():
    result = CliRunner().invoke(main, ["-i", "10.0.0.1/x"])

    assert result.exit_code != 0
    assert "invalid device address" in result.output


@pytest.mark.parametrize(
    "value,expected",
    [(":9001", ("", 9001)), ("0.0.0.0:9100", ("0.0.0.0", 9100)), ("9002", ("", 9002))],
)
def test_parse_listen_address(value, expected):
    assert parse_listen_address(value) == expected


def test_load_yaml_config(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        "web:\n  listen_address: ':9100'\n"
        "devices:\n  - ip: 10.0.0.1\n    name: desk\n  - ip: 10.0.0.2\n  - 10.0.0.3\n"
    )

    cfg = load_config_file(str(path))

    assert cfg["web"]["listen_address"] == ":9100"
    assert to_device_entries(cfg) == [("10.0.0.1", "desk"), ("10.0.0.2", None), ("10.0.0.3", None)]


def test_load_json_config(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"devices": [{"ip": "10.0.0.9"}]}))

    assert to_device_entries(load_config_file(str(path))) == [("10.0.0.9", None)]


def test_empty_config_has_no_devices(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("")

    assert to_device_entries(load_config_file(str(path))) == []


def test_bad_config_rejected(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("- just\n- a list\n")
    with pytest.raises(ConfigError):
        load_config_file(str(path))

    with pytest.raises(ConfigError):
        to_device_entries({"devices": [{"name": "no ip"}]})


def test_config_file_duplicate_fails_startup(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("devices:\n  - ip: 10.0.0.1\n")

    result = CliRunner().invoke(main, ["--config.file", str(path), "-i", "10.0.0.1"])

    assert result.exit_code != 0
    assert "more than once" in result.output


def test_out_of_range_port_rejected():
    result = CliRunner().invoke(main, ["-i", "10.0.0.1", "-p", "70000"])

    assert result.exit_code == 2
    assert "70000" in result.output


def test_out_of_range_listen_address_rejected():
    result = CliRunner().invoke(main, ["-i", "10.0.0.1", "--web.listen-address", ":70000"])

    assert result.exit_code != 0
    assert "invalid listen address" in result.output

    with pytest.raises(ValueError):
        parse_listen_address("0.0.0.0:70000")


def test_mapping_with_space_fails_startup():
    result = CliRunner().invoke(main, ["-i", "10.0.0.1", "-m", "10.0.0.1:my plug"])

    assert result.exit_code != 0
    assert "invalid hostname" in result.output
