"""
Publish Faker-generated Debezium change events for the `posts` table.

Each cycle creates a post, optionally updates it and optionally deletes it,
so both projections can be watched converging without a database or
Debezium connector:

    python scripts/produce_sample_events.py --count 5 --update --delete
"""

import argparse
import json
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from confluent_kafka import Producer
from faker import Faker

from cdc_projector.config import app_config

faker = Faker()


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def generate_post(post_id: int) -> Dict[str, Any]:
    now = _now_iso()
    return {
        "id": post_id,
        "title": faker.sentence(nb_words=6),
        "content": faker.paragraph(nb_sentences=4),
        "author": faker.user_name(),
        "created_at": now,
        "updated_at": now,
    }


def envelope(op: str, before: Optional[Dict[str, Any]], after: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    ts_ms = int(time.time() * 1000)
    return {
        "schema": {
            "type": "struct",
            "fields": [],
            "optional": False,
            "name": "blogdb.public.posts.Envelope",
        },
        "payload": {
            "before": before,
            "after": after,
            "source": {
                "version": "2.5.0.Final",
                "connector": "postgresql",
                "name": "blogdb",
                "ts_ms": ts_ms,
                "snapshot": "false",
                "db": "blog_db",
                "schema": "public",
                "table": "posts",
            },
            "op": op,
            "ts_ms": ts_ms,
            "transaction": None,
        },
    }


def produce_events(
    producer: Producer,
    topic: str,
    count: int,
    first_id: int,
    update: bool,
    delete: bool,
    interval: float,
) -> None:
    lsn = int(time.time())

    def send(post_id: int, event: Dict[str, Any]) -> None:
        nonlocal lsn
        lsn += 1
        event["payload"]["source"]["lsn"] = lsn
        producer.produce(topic, key=str(post_id), value=json.dumps(event))
        print(f"Sent {event['payload']['op']} for post {post_id}")

    for post_id in range(first_id, first_id + count):
        post = generate_post(post_id)
        send(post_id, envelope("c", None, post))

        if update:
            updated = dict(post, title=faker.sentence(nb_words=6), updated_at=_now_iso())
            send(post_id, envelope("u", post, updated))
            post = updated

        if delete:
            send(post_id, envelope("d", post, None))

        time.sleep(interval)

    producer.flush()


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    parser.add_argument("--bootstrap-servers", default=",".join(app_config.kafka.bootstrap_servers))
    parser.add_argument("--topic", default=app_config.consumer.topic)
    parser.add_argument("--count", type=int, default=10)
    parser.add_argument("--first-id", type=int, default=1)
    parser.add_argument("--update", action="store_true", help="Follow each create with an update")
    parser.add_argument("--delete", action="store_true", help="Finish each cycle with a delete")
    parser.add_argument("--interval", type=float, default=1.0, help="Seconds between cycles")
    args = parser.parse_args()

    producer = Producer({"bootstrap.servers": args.bootstrap_servers})

    print(f"Producing {args.count} sample post cycles to {args.topic}...")
    produce_events(producer, args.topic, args.count, args.first_id, args.update, args.delete, args.interval)
    print("Finished producing messages.")


if __name__ == "__main__":
    main()
