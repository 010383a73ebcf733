from __future__ import annotations

from vaultledger.core.config import Settings
from vaultledger.core.errors import ConfigError
from vaultledger.providers.chain.fake import FakeChainClient
from vaultledger.providers.chain.solana_rpc import SolanaRpcClient


def get_chain_client(settings: Settings):
    provider = (settings.chain_provider or "solana").lower()

    if provider == "fake":
        return FakeChainClient()
    if provider == "solana":
        return SolanaRpcClient(settings)
    raise ConfigError(f"unsupported chain provider: {provider}")
