# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the Apache 2.0 License.


class SwarmNetError(Exception):
    """
    Base class for every error raised while bootstrapping or using a test network.
    """


class ConfigError(SwarmNetError):
    """
    A persisted artifact (network, gateway or client configuration, keystore)
    could not be read or is malformed.
    """


class PersistError(SwarmNetError):
    """
    A persisted artifact could not be written (e.g. disk full, permissions).
    """


class LaunchError(SwarmNetError):
    """
    One or more nodes of the swarm failed to start. Nodes that did start have
    already been stopped when this is raised.
    """


class BindError(SwarmNetError):
    """
    The RPC front-end could not obtain a local port or failed to start.
    """


class SyncError(SwarmNetError):
    """
    Synchronising wallet state from the network failed.
    """


class GatewayError(SwarmNetError):
    """
    A gateway operation failed (unknown object, rejected transaction, no quorum).
    """


class RpcError(GatewayError):
    """
    Error response returned by a JSON-RPC server.
    """

    def __init__(self, code, message, data=None):
        super().__init__(f"[{code}] {message}")
        self.code = code
        self.message = message
        self.data = data


class InvalidArgumentError(SwarmNetError, ValueError):
    """
    An operation was called with arguments it rejects (e.g. an inverted range).
    """
