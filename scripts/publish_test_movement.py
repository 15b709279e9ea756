"""
Publish a sample movement event to the broker for local testing
Usage: python scripts/publish_test_movement.py --tipo entrada --cantidad 25 [--product-id UUID]
"""
import sys
import os
import argparse
import asyncio
import json
import uuid
from datetime import datetime, timezone

# Add project root to path
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from movement_ledger.core.config import settings
from movement_ledger.integrations import RabbitBroker


def build_message(args) -> dict:
    return {
        "product_id": args.product_id or str(uuid.uuid4()),
        "sku_id": args.sku_id,
        "request_id": args.request_id or str(uuid.uuid4()),
        "document_id": str(uuid.uuid4()),
        "tipo_movimiento": args.tipo,
        "cantidad": args.cantidad,
        "usuario_id": "test-user-123",
        "motivo": "Movimiento de prueba desde script",
        "client_account_id": args.client_account_id or str(uuid.uuid4()),
        "origen": args.origen,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "metadata": {"test": True, "script_version": "1.0", "ambiente": "development"},
    }


async def publish(args):
    broker = RabbitBroker(settings.RABBIT_URL, settings.RABBIT_EXCHANGE, settings.RABBIT_PREFETCH_COUNT)
    await broker.connect()
    try:
        for _ in range(args.count):
            message = build_message(args)
            await broker.publish(args.routing_key, json.dumps(message).encode("utf-8"), message_id=str(uuid.uuid4()))
            print(f"✅ Published {message['tipo_movimiento']} x{message['cantidad']} for product {message['product_id']}")
        if args.malformed:
            await broker.publish(args.routing_key, b"{not json")
            print("⚠️ Published one malformed message")
    finally:
        await broker.close()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Publish test movement events")
    parser.add_argument("--product-id", help="Product UUID (random if omitted)")
    parser.add_argument("--sku-id", help="SKU UUID")
    parser.add_argument("--request-id", help="Request UUID (random if omitted)")
    parser.add_argument("--client-account-id", help="Client account UUID (random if omitted)")
    parser.add_argument("--tipo", default="entrada", choices=["entrada", "salida", "ajuste"])
    parser.add_argument("--cantidad", type=int, default=25)
    parser.add_argument("--origen", default="manual", choices=["api", "ocr", "manual", "sistema"])
    parser.add_argument("--count", type=int, default=1, help="Number of messages to publish")
    parser.add_argument("--routing-key", default=settings.RABBIT_ROUTING_KEYS[0])
    parser.add_argument("--malformed", action="store_true", help="Also publish one malformed message")
    asyncio.run(publish(parser.parse_args()))
