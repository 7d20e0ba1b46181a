#!/usr/bin/env python3
"""
Pair a WhatsApp connection from a terminal: start (or reconnect) pairing, write the QR code
as a PNG, then wait for the scan. Exits 0 on connected, 1 on failure/timeout/cancel.

  python scripts/pair_connection.py --company acme --name "Vendas" --out qr.png
  python scripts/pair_connection.py --connection-id <id> --out qr.png
"""
import asyncio
import base64
import binascii
import sys
from pathlib import Path

repo = Path(__file__).resolve().parent.parent
if str(repo) not in sys.path:
    sys.path.insert(0, str(repo))

# Late imports after path setup
from apps.api.db import get_sessionmaker, init_db
from apps.connections.errors import ConnectionLifecycleError
from apps.connections.gateway import UazapiGateway
from apps.connections.manager import ConnectionManager
from apps.connections.phone import format_phone
from apps.connections.settings import get_settings
from apps.connections.store import ConnectionStore


def qr_png_bytes(qr_code: str) -> bytes:
    """Decode a provider QR payload (data URL or bare base64) to PNG bytes."""
    payload = qr_code.split(",", 1)[1] if qr_code.startswith("data:") else qr_code
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError("QR code is not base64 image data") from e


async def run(company_id: str, name: str, connection_id: str, out: Path) -> int:
    init_db()
    settings = get_settings()
    gateway = UazapiGateway.from_settings(settings)
    manager = ConnectionManager(ConnectionStore(get_sessionmaker()), gateway, settings=settings)

    def write_qr(conn_id: str, qr_code: str) -> None:
        out.write_bytes(qr_png_bytes(qr_code))
        print(f"QR code for {conn_id} written to {out}; scan it within {int(settings.PAIRING_DEADLINE_SECONDS)}s")

    try:
        if connection_id:
            session = await manager.reconnect(connection_id, on_qr=write_qr)
        else:
            session = await manager.start_pairing(company_id, name, on_qr=write_qr)
        result = await session.wait()
    except ConnectionLifecycleError as e:
        print(f"Pairing failed: {e}", file=sys.stderr)
        return 1
    finally:
        await manager.shutdown()
        await gateway.aclose()

    if not result.ok:
        print(f"Pairing ended: {result.state.value} ({result.error})", file=sys.stderr)
        return 1
    phone = format_phone(result.normalized_phone) if result.normalized_phone else result.phone_number
    print(f"Connected: {result.connection_id} phone={phone}")
    if result.migration_id:
        print(f"Migrated {result.migrated_conversations} conversations from an archived connection")
    return 0


if __name__ == "__main__":
    import argparse
    parser = argparse.ArgumentParser(description="Pair a WhatsApp connection via QR code")
    parser.add_argument("--company", default="", help="Company id (new connection)")
    parser.add_argument("--name", default="", help="Connection name (new connection)")
    parser.add_argument("--connection-id", default="", help="Reconnect this existing connection instead")
    parser.add_argument("--out", default="qr.png", help="Where to write the QR PNG")
    args = parser.parse_args()
    if not args.connection_id and not (args.company and args.name):
        parser.error("either --connection-id or both --company and --name are required")
    sys.exit(asyncio.run(run(args.company, args.name, args.connection_id, Path(args.out))))
