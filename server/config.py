"""Runtime settings from environment variables.

Secrets (private key, provider API keys) come from the environment only,
never from code.
"""

import os
from dataclasses import dataclass, field

from protocol import (
    BACKOFF_BASE, DEFAULT_CHAIN_ID, DEFAULT_PROVIDER_ORDER, DEFAULT_RPC_URLS,
    MAX_SOLUTION_LENGTH, MAX_SUBMIT_RETRIES, POLL_INTERVAL, SYNC_INTERVAL,
    SYNC_WINDOW_BLOCKS, TEST_CONTRACT,
)


def _split(value: str | None) -> list[str]:
    if not value:
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


def _optional_int(value: str | None) -> int | None:
    if value is None or value.strip() == "":
        return None
    return int(value)


@dataclass
class Settings:
    rpc_urls: list[str] = field(default_factory=lambda: list(DEFAULT_RPC_URLS))
    chain_id: int = DEFAULT_CHAIN_ID
    contract_address: str = TEST_CONTRACT
    sync_from_block: int | None = None
    agent_private_key: str | None = None
    sync_window: int = SYNC_WINDOW_BLOCKS
    sync_interval: float = SYNC_INTERVAL
    poll_interval: float = POLL_INTERVAL
    providers: list[str] = field(default_factory=lambda: list(DEFAULT_PROVIDER_ORDER))
    openai_api_key: str | None = None
    groq_api_key: str | None = None
    max_solution_length: int = MAX_SOLUTION_LENGTH
    max_retries: int = MAX_SUBMIT_RETRIES
    backoff_base: float = BACKOFF_BASE
    db_path: str = "aptan.db"
    port: int = 3001
    log_level: str = "INFO"

    @property
    def provider_keys(self) -> dict[str, str | None]:
        return {"openai": self.openai_api_key, "groq": self.groq_api_key}

    @classmethod
    def from_env(cls, environ=None) -> "Settings":
        env = os.environ if environ is None else environ
        primary = _split(env.get("APTAN_RPC_URL"))
        fallbacks = _split(env.get("APTAN_RPC_FALLBACKS"))
        rpc_urls = primary + fallbacks
        if not rpc_urls:
            rpc_urls = list(DEFAULT_RPC_URLS)
        elif not fallbacks:
            # A single configured endpoint still fails over to the public ones
            rpc_urls += [u for u in DEFAULT_RPC_URLS if u not in rpc_urls]

        return cls(
            rpc_urls=rpc_urls,
            chain_id=int(env.get("APTAN_CHAIN_ID", DEFAULT_CHAIN_ID)),
            contract_address=env.get("APTAN_CONTRACT_ADDRESS") or TEST_CONTRACT,
            sync_from_block=_optional_int(env.get("APTAN_SYNC_FROM_BLOCK")),
            agent_private_key=env.get("APTAN_AGENT_PRIVATE_KEY") or None,
            sync_window=int(env.get("APTAN_SYNC_WINDOW", SYNC_WINDOW_BLOCKS)),
            sync_interval=float(env.get("APTAN_SYNC_INTERVAL", SYNC_INTERVAL)),
            poll_interval=float(env.get("APTAN_POLL_INTERVAL", POLL_INTERVAL)),
            providers=_split(env.get("APTAN_PROVIDERS")) or list(DEFAULT_PROVIDER_ORDER),
            openai_api_key=env.get("OPENAI_API_KEY") or None,
            groq_api_key=env.get("GROQ_API_KEY") or None,
            max_solution_length=int(env.get("APTAN_MAX_SOLUTION_LENGTH", MAX_SOLUTION_LENGTH)),
            max_retries=int(env.get("APTAN_MAX_RETRIES", MAX_SUBMIT_RETRIES)),
            backoff_base=float(env.get("APTAN_BACKOFF_BASE", BACKOFF_BASE)),
            db_path=env.get("APTAN_DB", "aptan.db"),
            port=int(env.get("APTAN_PORT", "3001")),
            log_level=env.get("APTAN_LOG_LEVEL", "INFO").upper(),
        )
