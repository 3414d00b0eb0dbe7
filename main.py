# main.py
import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

from web3 import AsyncWeb3

from config import Settings, configure_logging
from connection import LedgerConnectionManager
from eth_client import EthereumClient, load_abi
from exceptions import RegistrarError, user_message
from ipfs_client import PinataClient
from models import RegistrationForm, SelectedFile, SubmissionState
from registrar import DocumentRegistrar
from wallet import LocalKeyWallet, NodeWallet

logger = logging.getLogger(__name__)


def build_registrar(settings: Settings) -> DocumentRegistrar:
    w3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(settings.rpc_url))

    if settings.private_key:
        wallet = LocalKeyWallet(settings.private_key, gas_limit_min=settings.gas_limit_min)
    else:
        wallet = NodeWallet(w3)
    connection = LedgerConnectionManager(w3, wallet)

    abi = load_abi(settings.abi_path) if settings.abi_path else None
    eth_client = EthereumClient(connection, abi=abi, receipt_timeout=settings.receipt_timeout_seconds)

    storage = PinataClient(
        jwt=settings.pinata_jwt,
        gateway=settings.pinata_gateway,
        upload_url=settings.pinata_upload_url,
        timeout_seconds=settings.http_timeout_seconds,
    )
    return DocumentRegistrar(storage, eth_client, connection, contract_address=settings.contract_address)


async def register(registrar: DocumentRegistrar, args: argparse.Namespace) -> int:
    await registrar.connection.request_connection()
    registrar.select_file(SelectedFile.from_path(args.path))

    form = RegistrationForm(
        receiver=args.receiver,
        name=args.name or Path(args.path).name,
        description=args.description,
        doc_type=args.doc_type,
    )
    receipt = await registrar.submit(form)

    snapshot = registrar.snapshot()
    print("=== IPFS ===")
    print("  CID      :", snapshot["cid"])
    print("  Hash     :", snapshot["fileHash"])
    print("=== Ethereum ===")
    if registrar.state.get() is SubmissionState.CONFIRMED:
        print("  Tx Hash  :", receipt.tx_hash)
        print("  Block    :", receipt.block_number)
        return 0

    failure = registrar.failure.get()
    print(f"  Failed at {failure.stage.value}: {failure.message}", file=sys.stderr)
    return 1


async def retrieve(registrar: DocumentRegistrar, args: argparse.Namespace) -> int:
    resource = await registrar.retrieve(args.cid)
    if resource is None:
        failure = registrar.retrieval_failure.get()
        print(failure.message if failure else "The download was cancelled.", file=sys.stderr)
        return 1

    out = Path(args.out) if args.out else Path(resource.filename)
    out.write_bytes(resource.data)
    print(f"Saved {len(resource.data)} bytes ({resource.media_type}) to {out}")
    return 0


async def records(registrar: DocumentRegistrar, args: argparse.Namespace) -> int:
    await registrar.connection.request_connection()
    binding = registrar.current_binding()
    count = await binding.count_documents(args.address)
    titles = await binding.list_titles(args.address)
    print(f"{count} document(s) for {args.address}")
    for title in titles:
        doc = await binding.get_document(args.address, title)
        print(f"  - {doc.name} type={doc.doc_type} cid={doc.reference.cid} at {doc.created_at.isoformat()}")
    return 0


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Register documents on IPFS + Ethereum and fetch them back.")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("register", help="upload a file and register its CID on the contract")
    p.add_argument("path")
    p.add_argument("--receiver", required=True)
    p.add_argument("--name", default="")
    p.add_argument("--description", required=True)
    p.add_argument("--type", dest="doc_type", type=int, required=True)
    p.set_defaults(handler=register)

    p = sub.add_parser("retrieve", help="download a file by CID")
    p.add_argument("cid")
    p.add_argument("--out")
    p.set_defaults(handler=retrieve)

    p = sub.add_parser("records", help="list documents registered for an address")
    p.add_argument("address")
    p.set_defaults(handler=records)

    return parser.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)
    settings = Settings.from_env()
    configure_logging(settings.log_level)

    registrar = build_registrar(settings)
    try:
        return asyncio.run(args.handler(registrar, args))
    except RegistrarError as ex:
        logger.error("%s: %s", type(ex).__name__, ex)
        print(user_message(ex), file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
