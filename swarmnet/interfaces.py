# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the Apache 2.0 License.

from dataclasses import dataclass
import urllib.parse


def split_netloc(netloc, default_port=0):
    url = f"http://{netloc}"
    parsed = urllib.parse.urlparse(url)
    return parsed.hostname, (parsed.port if parsed.port else default_port)


def make_address(host, port=0):
    if ":" in host:
        return f"[{host}]:{port}"
    else:
        return f"{host}:{port}"


@dataclass(frozen=True)
class SocketAddress:
    host: str
    port: int

    def __str__(self):
        return make_address(self.host, self.port)

    def url(self, scheme="http"):
        return f"{scheme}://{self}"
