# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the Apache 2.0 License.

import os
import sys

import pytest
from loguru import logger as LOG

import swarmnet.config
import swarmnet.start_network
from swarmnet.config import SWARM_CLIENT_CONFIG, EmbeddedGatewayType


@pytest.fixture
def restore_logging():
    yield
    LOG.remove()
    LOG.add(sys.stderr)
    LOG.enable("swarmnet")


def test_defaults(monkeypatch):
    for name in ("SWARMNET_COMMITTEE_SIZE", "SWARMNET_FULLNODES", "SWARMNET_WORKSPACE"):
        monkeypatch.delenv(name, raising=False)
    args = swarmnet.start_network.cli_args([])
    assert args.committee_size == 4
    assert args.fullnodes == 0
    assert args.workspace is None
    assert not args.rpc
    assert not args.auto_shutdown


def test_environment_defaults(monkeypatch, tmp_path):
    monkeypatch.setenv("SWARMNET_COMMITTEE_SIZE", "7")
    monkeypatch.setenv("SWARMNET_FULLNODES", "2")
    monkeypatch.setenv("SWARMNET_WORKSPACE", str(tmp_path))
    args = swarmnet.start_network.cli_args([])
    assert (args.committee_size, args.fullnodes, args.workspace) == (7, 2, str(tmp_path))

    args = swarmnet.start_network.cli_args(["--committee-size", "1", "-f", "0"])
    assert (args.committee_size, args.fullnodes) == (1, 0)


@pytest.mark.parametrize("rpc", [[], ["--rpc"]])
def test_auto_shutdown(tmp_path, restore_logging, rpc):
    swarmnet.start_network.main(
        ["-c", "1", "-f", "1", "-w", str(tmp_path), "--auto-shutdown"] + rpc
    )
    client_config = swarmnet.config.read(
        os.path.join(tmp_path, SWARM_CLIENT_CONFIG), swarmnet.config.ClientConfig
    )
    assert isinstance(client_config.gateway, EmbeddedGatewayType)


def test_invalid_committee_size_exits(tmp_path, restore_logging):
    with pytest.raises(SystemExit) as e:
        swarmnet.start_network.main(["-c", "0", "-w", str(tmp_path), "--auto-shutdown"])
    assert e.value.code == 1
