"""
Shared per-chain AsyncWeb3 connections.

One set per process; concurrent live runs reuse the same providers.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from web3 import AsyncHTTPProvider, AsyncWeb3

from xsettle.config.config import Settings
from xsettle.core.json_utils import dumps

log = logging.getLogger("xsettle")


def _connect(url: str, timeout: float) -> AsyncWeb3:
    return AsyncWeb3(AsyncHTTPProvider(url, request_kwargs={"timeout": timeout}))


@dataclass
class ChainClients:
    base: AsyncWeb3
    zeta: AsyncWeb3
    polygon: AsyncWeb3

    @classmethod
    def from_settings(cls, cfg: Settings) -> "ChainClients":
        clients = cls(
            base=_connect(cfg.base_rpc_url, cfg.http_timeout),
            zeta=_connect(cfg.zeta_rpc_url, cfg.http_timeout),
            polygon=_connect(cfg.polygon_rpc_url, cfg.http_timeout),
        )
        log.info(dumps({
            "event": "chain_clients_ready",
            "base": cfg.base_rpc_url,
            "zeta": cfg.zeta_rpc_url,
            "polygon": cfg.polygon_rpc_url,
        }))
        return clients

    async def close(self) -> None:
        for w3 in (self.base, self.zeta, self.polygon):
            await w3.provider.disconnect()
