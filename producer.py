"""Bank event generator.

Simulates card transactions and online-banking logins with configurable
normal and fraudulent customer profiles.  Field names follow the core
banking export (transaction_id, txn_timestamp, card_number_hash,
login_time, device_info, ...) so the detector's parser sees what it would
see in production.

Usage:
    python producer.py
    python producer.py --normal 50 --velocity-abusers 2 --structurers 1 --card-thieves 1
    python producer.py --eps 100 --topic bank-events
"""

import argparse
import hashlib
import json
import random
import signal
import time
import uuid
from dataclasses import dataclass, field

from confluent_kafka import Producer
from confluent_kafka.admin import AdminClient, NewTopic

CITIES = ["Mumbai", "Delhi", "Bengaluru", "Chennai", "Kolkata", "Pune", "Hyderabad"]
RISKY_CITIES = ["Unknown", "Outside India"]
COUNTRIES = ["IN", "AE", "SG", "GB", "US"]
CHANNELS = ["pos", "ecommerce", "upi", "atm"]
TXN_TYPES = ["debit", "debit", "debit", "credit", "transfer", "refund"]
MCCS = ["5411", "5812", "5999", "4111", "5814", "7011", "5732", "5912"]

running = True


def _shutdown(sig, frame):
    global running
    print("\nShutting down generator...")
    running = False


signal.signal(signal.SIGINT, _shutdown)   # Ctrl+C (local dev)
signal.signal(signal.SIGTERM, _shutdown)  # docker stop / k8s pod termination


# ---------------------------------------------------------------------------
# Customer profiles
# ---------------------------------------------------------------------------

@dataclass
class Customer:
    customer_id: str
    account_id: str
    card_id: str
    role: str  # normal | velocity_abuser | structurer | card_thief | takeover_ring
    events_per_min: float
    amount_lo: float
    amount_hi: float
    login_rate: float           # fraction of events that are logins
    login_failure_rate: float   # fraction of logins that fail
    home_city: str = "Mumbai"
    devices: list = field(default_factory=list)
    ips: list = field(default_factory=list)

    @property
    def card_hash(self) -> str:
        return hashlib.sha256(self.card_id.encode()).hexdigest()[:32]


def _ips(n):
    return [f"10.{random.randint(0, 255)}.{random.randint(0, 255)}.{random.randint(1, 254)}"
            for _ in range(n)]


def _create_customers(n_normal, n_velocity, n_structurers, n_thieves, n_takeover):
    """Build the customer pool.  Each customer has one account and one card."""
    customers = []
    cid = 0

    def new(role, **kw):
        nonlocal cid
        cid += 1
        customers.append(Customer(
            customer_id=f"cust_{cid:05d}", account_id=f"acct_{cid:05d}",
            card_id=f"card_{cid:05d}", role=role, **kw,
        ))

    # --- Normal customers: a few transactions an hour, one device ---
    for _ in range(n_normal):
        new("normal", events_per_min=random.uniform(0.5, 3),
            amount_lo=50, amount_hi=8000, login_rate=0.2, login_failure_rate=0.03,
            home_city=random.choice(CITIES), devices=[uuid.uuid4().hex[:12]], ips=_ips(2))

    # --- Velocity abusers: card testing bursts, small amounts ---
    for _ in range(n_velocity):
        new("velocity_abuser", events_per_min=random.uniform(30, 60),
            amount_lo=1, amount_hi=300, login_rate=0.05, login_failure_rate=0.1,
            home_city=random.choice(CITIES), devices=[uuid.uuid4().hex[:12]], ips=_ips(1))

    # --- Structurers: many deposits just under the reporting threshold ---
    for _ in range(n_structurers):
        new("structurer", events_per_min=random.uniform(5, 15),
            amount_lo=400, amount_hi=499, login_rate=0.05, login_failure_rate=0.02,
            home_city=random.choice(CITIES), devices=[uuid.uuid4().hex[:12]], ips=_ips(1))

    # --- Card thieves: the same card hopping between cities ---
    for _ in range(n_thieves):
        new("card_thief", events_per_min=random.uniform(5, 20),
            amount_lo=2000, amount_hi=60000, login_rate=0.0, login_failure_rate=0.0,
            home_city=random.choice(CITIES), devices=[uuid.uuid4().hex[:12]], ips=_ips(1))

    # --- Takeover ring: many failed logins from many devices and IPs ---
    for _ in range(n_takeover):
        new("takeover_ring", events_per_min=random.uniform(10, 30),
            amount_lo=10000, amount_hi=90000, login_rate=0.8, login_failure_rate=0.6,
            home_city=random.choice(CITIES),
            devices=[uuid.uuid4().hex[:12] for _ in range(6)], ips=_ips(8))

    return customers


# ---------------------------------------------------------------------------
# Event generation
# ---------------------------------------------------------------------------

def _make_event(c: Customer) -> dict:
    """Generate one transaction or login for a customer's profile."""
    ts = time.time()

    if random.random() < c.login_rate:
        return {
            "login_id": f"login_{uuid.uuid4().hex[:12]}",
            "login_time": ts,
            "customer_id": c.customer_id,
            "account_id": c.account_id,
            "ip_address": random.choice(c.ips),
            "device_info": random.choice(c.devices),
            "success": random.random() >= c.login_failure_rate,
        }

    if c.role == "card_thief":
        city = random.choice(CITIES + RISKY_CITIES)
        country = random.choice(COUNTRIES)
    else:
        city = c.home_city if random.random() < 0.95 else random.choice(CITIES)
        country = "IN"

    txn_type = "credit" if c.role == "structurer" else random.choice(TXN_TYPES)
    if c.role == "velocity_abuser" and random.random() < 0.3:
        status = "failed"
    else:
        status = "success" if random.random() < 0.98 else "failed"

    return {
        "transaction_id": f"txn_{uuid.uuid4().hex[:12]}",
        "txn_timestamp": ts,
        "account_id": c.account_id,
        "customer_id": c.customer_id,
        "card_id": c.card_id,
        "card_number_hash": c.card_hash,
        "merchant_id": f"merch_{random.randint(1, 400):04d}",
        "merchant_category_code": random.choice(MCCS),
        "merchant_city": city,
        "merchant_country": country,
        "amount": round(random.uniform(c.amount_lo, c.amount_hi), 2),
        "currency": "INR",
        "transaction_type": txn_type,
        "status": status,
        "channel": random.choice(CHANNELS),
        "ip_address": random.choice(c.ips),
        "device_info": random.choice(c.devices),
    }


# ---------------------------------------------------------------------------
# Initialization
# ---------------------------------------------------------------------------

def _ensure_topics(bootstrap_servers, topics):
    """Create Kafka topics if they don't already exist."""
    admin = AdminClient({"bootstrap.servers": bootstrap_servers})
    new_topics = [NewTopic(t, num_partitions=3, replication_factor=3) for t in topics]
    fs = admin.create_topics(new_topics)
    for topic, f in fs.items():
        try:
            f.result()
            print(f"Created topic '{topic}'")
        except Exception as e:
            if "TOPIC_ALREADY_EXISTS" in str(e):
                print(f"Topic '{topic}' already exists")
            else:
                raise


# ---------------------------------------------------------------------------
# Main loop
# ---------------------------------------------------------------------------

def main():
    parser = argparse.ArgumentParser(description="Bank event generator")
    parser.add_argument("--bootstrap-servers", default="localhost:9092")
    parser.add_argument("--topic", default="bank-events")
    parser.add_argument("--normal", type=int, default=40)
    parser.add_argument("--velocity-abusers", type=int, default=1)
    parser.add_argument("--structurers", type=int, default=1)
    parser.add_argument("--card-thieves", type=int, default=1)
    parser.add_argument("--takeover-rings", type=int, default=1)
    parser.add_argument("--eps", type=float, default=50, help="Target events/sec")
    args = parser.parse_args()

    customers = _create_customers(
        args.normal, args.velocity_abusers, args.structurers,
        args.card_thieves, args.takeover_rings,
    )
    weights = [c.events_per_min for c in customers]

    print(f"Generating to topic '{args.topic}' at ~{args.eps} events/sec")
    print(f"Customers: {len(customers)} total")
    for c in customers:
        if c.role != "normal":
            print(f"  {c.account_id}  {c.role:<16s} ~{c.events_per_min:>5.0f} epm")

    _ensure_topics(args.bootstrap_servers, [args.topic])

    producer = Producer({
        "bootstrap.servers": args.bootstrap_servers,
        "acks": "all",
        "client.id": "bank-event-generator",
    })

    count = 0
    delay = 1.0 / args.eps

    while running:
        customer = random.choices(customers, weights=weights, k=1)[0]
        event = _make_event(customer)

        producer.produce(
            topic=args.topic,
            key=event["account_id"].encode(),
            value=json.dumps(event),
        )
        producer.poll(0)

        count += 1
        if count % 500 == 0:
            print(f"  ... {count} events produced")

        time.sleep(delay)

    producer.flush()
    print(f"Done. {count} events produced.")


if __name__ == "__main__":
    main()
