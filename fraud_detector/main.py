"""Detection service: reads bank events, runs the engine, publishes alerts.

Consumes transactions and logins from the input topic, fans them out to a
sharded worker pool (same account -> same worker), and publishes alert
create/update records to the output topic through the sink dispatcher.
Prometheus metrics are served on --metrics-port.

Usage:
    python -m fraud_detector.main
    python -m fraud_detector.main --bootstrap-servers kafka-1:29092 --config engine.yml
"""

import argparse
import json
import signal
import sys

import structlog
from confluent_kafka import Consumer, KafkaError, KafkaException
from confluent_kafka.admin import AdminClient, NewTopic
from prometheus_client import start_http_server

from fraud_detector.config import EngineConfig
from fraud_detector.engine import DetectionEngine, ShardedWorkerPool
from fraud_detector.logging import setup_logging
from fraud_detector.reference import StaticReferenceData
from fraud_detector.rules import default_rules
from fraud_detector.sink import KafkaAlertSink

logger = structlog.get_logger()

running = True


def _shutdown(sig, frame):
    global running
    print("\nShutting down detector...")
    running = False


def _ensure_topics(bootstrap_servers, topics, partitions=3, replication_factor=3):
    """Create any of *topics* the cluster does not have yet."""
    admin = AdminClient({"bootstrap.servers": bootstrap_servers})
    futures = admin.create_topics(
        [NewTopic(t, num_partitions=partitions, replication_factor=replication_factor)
         for t in topics]
    )
    for topic, future in futures.items():
        try:
            future.result()
            logger.info("topic_created", topic=topic, partitions=partitions)
        except KafkaException as e:
            if e.args[0].code() != KafkaError.TOPIC_ALREADY_EXISTS:
                raise
            logger.debug("topic_exists", topic=topic)


def main():
    parser = argparse.ArgumentParser(description="Bank fraud detection service")
    parser.add_argument("--bootstrap-servers", default="localhost:9092")
    parser.add_argument("--input-topic", default="bank-events")
    parser.add_argument("--output-topic", default="fraud-alerts")
    parser.add_argument("--group-id", default="fraud-detector")
    parser.add_argument("--partitions", type=int, default=3,
                        help="Partitions for topics this service creates")
    parser.add_argument("--replication-factor", type=int, default=3)
    parser.add_argument("--config", help="YAML engine config")
    parser.add_argument("--rules-dir", help="Directory of YAML rule definitions")
    parser.add_argument("--reference", help="YAML reference data (merchants, accounts)")
    parser.add_argument("--workers", type=int, help="Override config.workers")
    parser.add_argument("--metrics-port", type=int, default=9100)
    parser.add_argument("--log-level", default="INFO")
    parser.add_argument("--console-logs", action="store_true",
                        help="Human-readable logs instead of JSON")
    args = parser.parse_args()

    setup_logging(args.log_level, json=not args.console_logs)
    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    config = EngineConfig.from_env(args.config)
    if args.workers:
        config.workers = args.workers

    reference = None
    if args.reference:
        reference = StaticReferenceData.from_yaml(
            args.reference,
            high_risk_mccs=config.high_risk_mccs,
            high_risk_cities=config.high_risk_cities,
        )

    _ensure_topics(args.bootstrap_servers, [args.input_topic, args.output_topic],
                   partitions=args.partitions, replication_factor=args.replication_factor)
    start_http_server(args.metrics_port)

    sink = KafkaAlertSink(args.bootstrap_servers, topic=args.output_topic)
    engine = DetectionEngine(rules=default_rules(config, args.rules_dir), config=config,
                             reference=reference, sink=sink)
    pool = ShardedWorkerPool(engine, workers=config.workers)

    consumer = Consumer({
        "bootstrap.servers": args.bootstrap_servers,
        "group.id": args.group_id,
        "auto.offset.reset": "earliest",
        "enable.auto.commit": True,
    })
    consumer.subscribe([args.input_topic])

    engine.start()
    pool.start()
    consumed = 0

    print(f"Fraud detector started  input={args.input_topic}  "
          f"output={args.output_topic}  rules={len(engine.rules)}  "
          f"workers={config.workers}  metrics=:{args.metrics_port}")

    try:
        while running:
            msg = consumer.poll(1.0)
            if msg is None:
                continue
            if msg.error():
                if msg.error().code() == KafkaError._PARTITION_EOF:
                    continue
                print(f"Consumer error: {msg.error()}", file=sys.stderr)
                continue

            try:
                event = json.loads(msg.value().decode("utf-8"))
            except (UnicodeDecodeError, json.JSONDecodeError) as e:
                logger.warning("message_undecodable", offset=msg.offset(), error=str(e))
                continue
            pool.submit(event)
            consumed += 1

            if consumed % 500 == 0:
                print(f"  ... {consumed} events consumed, {len(engine.alerts)} alerts, "
                      f"{len(engine.store)} windows, {engine.dispatcher.pending} pending")
    finally:
        pool.join()
        pool.stop()
        engine.close()
        consumer.close()
        print(f"Done. {consumed} events consumed, {len(engine.alerts)} alerts raised, "
              f"{engine.dispatcher.dropped} records dropped.")


if __name__ == "__main__":
    main()
