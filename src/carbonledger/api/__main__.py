# src/carbonledger/api/__main__.py
from __future__ import annotations

import os

import uvicorn

from carbonledger.env import load_dotenv_if_present


def main() -> None:
    # Load .env early so CARBON_* vars exist before anything reads them.
    load_dotenv_if_present()

    # Import after dotenv load so config is read from the final environment.
    from carbonledger.api.app import create_app
    from carbonledger.runtime.chain_config import apply_chain_config_to_env, load_chain_config

    apply_chain_config_to_env(load_chain_config())

    host = os.getenv("CARBON_API_HOST", "127.0.0.1")
    port = int(os.getenv("CARBON_API_PORT", "8000"))

    uvicorn.run(create_app(), host=host, port=port, log_level="info")


if __name__ == "__main__":
    main()
