# The MIT License (MIT)
# Copyright © 2023 Yuma Rao
# Copyright © 2023 Opentensor Foundation

# Permission is hereby granted, free of charge, to any person obtaining a copy of this software and associated
# documentation files (the “Software”), to deal in the Software without restriction, including without limitation
# the rights to use, copy, modify, merge, publish, distribute, sublicense, and/or sell copies of the Software,
# and to permit persons to whom the Software is furnished to do so, subject to the following conditions:

# The above copyright notice and this permission notice shall be included in all copies or substantial portions of
# the Software.

# THE SOFTWARE IS PROVIDED “AS IS”, WITHOUT WARRANTY OF ANY KIND, EXPRESS OR IMPLIED, INCLUDING BUT NOT LIMITED TO
# THE WARRANTIES OF MERCHANTABILITY, FITNESS FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL
# THE AUTHORS OR COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER LIABILITY, WHETHER IN AN ACTION
# OF CONTRACT, TORT OR OTHERWISE, ARISING FROM, OUT OF OR IN CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER
# DEALINGS IN THE SOFTWARE.

from __future__ import annotations

import argparse
import os
from dataclasses import dataclass
from typing import Mapping

import bittensor as bt
from dotenv import load_dotenv

ENV_PREFIX = "CAPTCHAPAY_"


@dataclass
class LedgerConfig:
    """Resolved runtime settings for the store client, cache and server."""

    store_url: str = "http://127.0.0.1:8300"
    store_auth_token: str | None = None
    store_timeout: float = 30.0
    cache_dir: str = "captchapay/data/cache"
    server_host: str = "127.0.0.1"
    server_port: int = 8300


def load_env() -> None:
    """Load .env unless running under the test suite."""
    if os.environ.get(f"{ENV_PREFIX}TEST_MODE") != "true":
        load_dotenv()


def add_args(parser: argparse.ArgumentParser) -> None:
    """
    Adds store, cache and server arguments to the parser.
    """
    defaults = LedgerConfig()

    parser.add_argument(
        "--store.url",
        type=str,
        help="Base URL of the remote document store.",
        default=defaults.store_url,
    )
    parser.add_argument(
        "--store.auth_token",
        type=str,
        help="Token sent as the `auth` query parameter on every store request.",
        default=None,
    )
    parser.add_argument(
        "--store.timeout",
        type=float,
        help="HTTP timeout (seconds) for remote store requests.",
        default=defaults.store_timeout,
    )
    parser.add_argument(
        "--cache.dir",
        type=str,
        help="Directory holding device cache snapshots.",
        default=defaults.cache_dir,
    )
    parser.add_argument(
        "--server.host",
        type=str,
        help="Interface the development document store binds to.",
        default=defaults.server_host,
    )
    parser.add_argument(
        "--server.port",
        type=int,
        help="Port the development document store listens on.",
        default=defaults.server_port,
    )


def load_config(
    args: argparse.Namespace | None = None,
    environ: Mapping[str, str] | None = None,
) -> LedgerConfig:
    """Build a LedgerConfig from parsed CLI args, then apply env overrides.

    Environment variables have the highest priority:
    CAPTCHAPAY_STORE__URL, CAPTCHAPAY_STORE__AUTH_TOKEN, CAPTCHAPAY_STORE__TIMEOUT,
    CAPTCHAPAY_CACHE__DIR, CAPTCHAPAY_SERVER__HOST, CAPTCHAPAY_SERVER__PORT.
    """
    env = os.environ if environ is None else environ
    config = LedgerConfig()

    if args is not None:
        config.store_url = getattr(args, "store.url", config.store_url)
        config.store_auth_token = getattr(args, "store.auth_token", config.store_auth_token)
        config.store_timeout = float(getattr(args, "store.timeout", config.store_timeout))
        config.cache_dir = getattr(args, "cache.dir", config.cache_dir)
        config.server_host = getattr(args, "server.host", config.server_host)
        config.server_port = int(getattr(args, "server.port", config.server_port))

    config.store_url = env.get(f"{ENV_PREFIX}STORE__URL", config.store_url)
    config.store_auth_token = env.get(f"{ENV_PREFIX}STORE__AUTH_TOKEN", config.store_auth_token) or None
    config.store_timeout = float(env.get(f"{ENV_PREFIX}STORE__TIMEOUT", config.store_timeout))
    config.cache_dir = env.get(f"{ENV_PREFIX}CACHE__DIR", config.cache_dir)
    config.server_host = env.get(f"{ENV_PREFIX}SERVER__HOST", config.server_host)
    config.server_port = int(env.get(f"{ENV_PREFIX}SERVER__PORT", config.server_port))

    bt.logging.debug({
        "ledger_config": {
            "store_url": config.store_url,
            "store_auth": bool(config.store_auth_token),
            "store_timeout": config.store_timeout,
            "cache_dir": config.cache_dir,
            "server": f"{config.server_host}:{config.server_port}",
        }
    })
    return config


__all__ = ["ENV_PREFIX", "LedgerConfig", "add_args", "load_config", "load_env"]
