"""Publish a raw notification message directly to a tier topic.

The message is keyed by its `request_id` like every pipeline publish, so it
lands on the same partition as the request's other attempts. Useful for
duplicate-delivery and retry-tier testing.
"""

import argparse
import asyncio
import json
from pathlib import Path

from aiokafka import AIOKafkaProducer


async def publish(bootstrap_servers: str, topic: str, payload: dict) -> None:
    """Open producer, publish one keyed message, close producer."""

    key = payload.get("request_id")
    if not key:
        raise SystemExit("message must carry request_id")
    producer = AIOKafkaProducer(bootstrap_servers=bootstrap_servers, acks="all")
    await producer.start()
    try:
        await producer.send_and_wait(topic, json.dumps(payload).encode("utf-8"), key=key.encode("utf-8"))
    finally:
        await producer.stop()


def main() -> None:
    """Parse CLI args and publish one JSON message."""

    parser = argparse.ArgumentParser(description="Publish a raw notification message to a tier topic.")
    parser.add_argument("--bootstrap-servers", default="localhost:9092")
    parser.add_argument("--topic", default="notifications")
    parser.add_argument("--json", dest="json_inline", default=None, help="Inline JSON message")
    parser.add_argument("--file", dest="json_file", default=None, help="Path to JSON file")
    args = parser.parse_args()

    if bool(args.json_inline) == bool(args.json_file):
        raise SystemExit("Provide exactly one of --json or --file")

    if args.json_inline:
        payload = json.loads(args.json_inline)
    else:
        payload = json.loads(Path(args.json_file).read_text())

    asyncio.run(publish(args.bootstrap_servers, args.topic, payload))
    print(f"Published to topic={args.topic} key={payload['request_id']}")


if __name__ == "__main__":
    main()
