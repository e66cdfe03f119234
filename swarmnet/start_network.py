# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the Apache 2.0 License.
import argparse
import asyncio
import os
import sys

from loguru import logger as LOG

import swarmnet.network
from swarmnet.errors import SwarmNetError
from swarmnet.swarm import DEFAULT_COMMITTEE_SIZE


def cli_args(args=None):
    parser = argparse.ArgumentParser(
        description="Start a local test network",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument(
        "-c",
        "--committee-size",
        help="Number of validators",
        type=int,
        default=int(os.getenv("SWARMNET_COMMITTEE_SIZE", str(DEFAULT_COMMITTEE_SIZE))),
    )
    parser.add_argument(
        "-f",
        "--fullnodes",
        help="Number of fullnodes following the validators",
        type=int,
        default=int(os.getenv("SWARMNET_FULLNODES", "0")),
    )
    parser.add_argument(
        "-w",
        "--workspace",
        help="Working directory of the network. A temporary directory is created if unset",
        default=os.getenv("SWARMNET_WORKSPACE"),
    )
    parser.add_argument(
        "--rpc",
        help="Also start the JSON-RPC gateway and point the wallet configuration at it",
        action="store_true",
        default=False,
    )
    parser.add_argument(
        "--auto-shutdown",
        help="If set, network shuts down as soon as it is up",
        action="store_true",
        default=False,
    )
    parser.add_argument(
        "-v",
        "--verbose",
        help="Include logs describing the startup process",
        action="store_true",
        default=False,
    )
    return parser.parse_args(args)


def configure_logging(verbose):
    LOG.remove()
    if verbose:
        LOG.add(
            sys.stdout,
            format="<green>{time:HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
        )
    else:
        LOG.add(
            sys.stdout,
            format="<green>[{time:HH:mm:ss.SSS}]</green> {message}",
            level="INFO",
        )
        LOG.disable("swarmnet")
        LOG.enable("swarmnet.start_network")


async def wait_for_shutdown(auto_shutdown):
    if auto_shutdown:
        LOG.info("Automatically shutting down network after successful start")
        return
    LOG.warning("Press Ctrl+C to shutdown the network")
    while True:
        await asyncio.sleep(60)


def log_swarm(swarm):
    LOG.info("Started test network with the following nodes:")
    for node in swarm.nodes:
        LOG.info(f"  {node.name:<12} = http://{node.get_rpc_address()}")
    LOG.info(f"Configuration and keystore written to: {swarm.dir()}")


async def run(args):
    LOG.info(
        f"Starting {args.committee_size} validator{'s' if args.committee_size != 1 else ''} and {args.fullnodes} fullnode{'s' if args.fullnodes != 1 else ''}..."
    )
    if args.rpc:
        async with swarmnet.network.rpc_test_network(
            fullnode_count=args.fullnodes,
            committee_size=args.committee_size,
            working_dir=args.workspace,
        ) as net:
            log_swarm(net.network)
            LOG.info(f"JSON-RPC gateway listening on {net.rpc_url}")
            await wait_for_shutdown(args.auto_shutdown)
    else:
        swarm = await swarmnet.network.start_test_network_with_fullnodes(
            None,
            args.fullnodes,
            committee_size=args.committee_size,
            working_dir=args.workspace,
        )
        try:
            log_swarm(swarm)
            await wait_for_shutdown(args.auto_shutdown)
        finally:
            swarm.stop()
    LOG.info("All nodes stopped.")


def main(argv=None):
    args = cli_args(argv)
    configure_logging(args.verbose)
    try:
        asyncio.run(run(args))
    except KeyboardInterrupt:
        LOG.info("Stopping test network...")
    except SwarmNetError as e:
        LOG.error(f"Error! Could not start test network: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
