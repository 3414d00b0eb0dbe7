# config.py
import logging
import os
import sys
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

from ipfs_client import PINATA_UPLOAD_URL

LOGGER_NAMES = (
    "app",
    "connection",
    "eth_client",
    "ipfs_client",
    "main",
    "observable",
    "registrar",
    "wallet",
)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


@dataclass(frozen=True)
class Settings:
    """
    .env / 環境変数から読む設定。

    必須:
      - ETH_RPC_URL
      - PINATA_JWT
      - PINATA_GATEWAY
    任意:
      - ETH_PRIVATE_KEY（無ければノード管理のアカウントを使う）
      - ETH_CONTRACT_ADDRESS, ETH_CONTRACT_ABI_PATH
    """

    rpc_url: str
    pinata_jwt: str
    pinata_gateway: str
    private_key: Optional[str] = None
    contract_address: Optional[str] = None
    abi_path: Optional[str] = None
    pinata_upload_url: str = PINATA_UPLOAD_URL
    http_timeout_seconds: float = 30.0
    receipt_timeout_seconds: float = 120.0
    gas_limit_min: int = 300000
    log_level: str = "INFO"
    flask_secret_key: str = "change-this-to-some-random-long-string"

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()

        missing = [name for name in ("ETH_RPC_URL", "PINATA_JWT", "PINATA_GATEWAY") if not os.getenv(name)]
        if missing:
            raise RuntimeError(f"{', '.join(missing)} is not set")

        return cls(
            rpc_url=os.getenv("ETH_RPC_URL", ""),
            pinata_jwt=os.getenv("PINATA_JWT", ""),
            pinata_gateway=os.getenv("PINATA_GATEWAY", ""),
            private_key=os.getenv("ETH_PRIVATE_KEY") or None,
            contract_address=os.getenv("ETH_CONTRACT_ADDRESS") or None,
            abi_path=os.getenv("ETH_CONTRACT_ABI_PATH") or None,
            pinata_upload_url=os.getenv("PINATA_UPLOAD_URL", PINATA_UPLOAD_URL),
            http_timeout_seconds=float(os.getenv("HTTP_TIMEOUT_SECONDS", "30")),
            receipt_timeout_seconds=float(os.getenv("ETH_RECEIPT_TIMEOUT", "120")),
            gas_limit_min=int(os.getenv("ETH_GAS_LIMIT_MIN", "300000")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            flask_secret_key=os.getenv("FLASK_SECRET_KEY", "change-this-to-some-random-long-string"),
        )


def configure_logging(level: str = "INFO") -> None:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    for name in LOGGER_NAMES:
        logger = logging.getLogger(name)
        logger.setLevel(level.upper())
        if not logger.handlers:
            logger.addHandler(handler)
