# Overview: Flask CLI command group for bootstrap, inspection, and ledger verification.

# backend/codledger/cli.py
# Commands Legend (run from the repository root):
# Prereqs:
# - Activate your virtualenv and `pip install -e .`
# - Set FLASK_APP to codledger (PowerShell: $env:FLASK_APP="codledger").
# - Use: python -m flask ledger <command> [options]
#
# - python -m flask ledger init-db
#   Create all tables (development; production uses `flask db upgrade`).
# - python -m flask ledger seed-demo
#   Create a demo store, carrier with rates, products and delivered orders.
# - python -m flask ledger pending --store-id 1
#   Show delivered orders awaiting reconciliation grouped by day and carrier.
# - python -m flask ledger verify-stock --product-id 1 [--store-id 1]
#   Replay a product's movement log and compare with its stock.
# - python -m flask ledger verify-settlements --store-id 1
#   Recompute net receivable of every settlement from its stored components.

import click
from flask.cli import with_appcontext

from .extensions import db
from .errors import LedgerError
from .models import Carrier, CarrierRate, Product, Store
from .models.carriers import RATE_SCOPE_CITY, RATE_SCOPE_ZONE
from .services import inventory_service, order_service, reconciliation_service, settlement_service


@click.group('ledger')
def ledger_group():
    """COD settlement ledger commands."""


@ledger_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables for the configured database."""
    db.create_all()
    click.echo(f"PASS Tables created on {db.engine.url.render_as_string(hide_password=True)}")


@ledger_group.command('seed-demo')
@click.option('--store-code', default='DEMO', help='Code of the demo store')
@with_appcontext
def seed_demo(store_code):
    """
    Create demo data: one store, one carrier with city/zone rates, two
    products and three orders already delivered today.
    """
    store = db.session.query(Store).filter_by(code=store_code).first()
    if store:
        click.echo(f"WARN Store '{store_code}' already exists (ID: {store.id}), skipping...")
        return

    store = Store(name="Demo Store", code=store_code)
    db.session.add(store)
    db.session.flush()

    carrier = Carrier(store_id=store.id, name="Demo Courier", failed_attempt_fee_percent=50)
    db.session.add(carrier)
    db.session.flush()

    for scope, name, rate in (
        (RATE_SCOPE_CITY, "Asunción", 25000),
        (RATE_SCOPE_CITY, "San Lorenzo", 30000),
        (RATE_SCOPE_ZONE, "Central", 35000),
        (RATE_SCOPE_ZONE, "Interior", 45000),
    ):
        db.session.add(CarrierRate(store_id=store.id, carrier_id=carrier.id, scope=scope, scope_name=name, rate=rate))

    shirt = Product(store_id=store.id, sku="SHIRT-001", name="Shirt", stock=50)
    cap = Product(store_id=store.id, sku="CAP-001", name="Cap", stock=20)
    db.session.add_all([shirt, cap])
    db.session.commit()
    click.echo(f"PASS Created store {store.name} (ID: {store.id}), carrier {carrier.name} (ID: {carrier.id})")

    demo_orders = (
        ("cash", None, 100000, "Asuncion", None, [(shirt, 2)]),
        ("transfer", "bank_transfer", 80000, "San Lorenzo", None, [(cap, 1)]),
        ("efectivo", None, 60000, "Luque", "Central", [(shirt, 1), (cap, 1)]),
    )
    for number, (method, prepaid, total, city, zone, lines) in enumerate(demo_orders, start=1):
        order = order_service.create_order(
            store_id=store.id,
            order_number=f"#{1000 + number}",
            courier_id=carrier.id,
            payment_method=method,
            prepaid_method=prepaid,
            total_price=total,
            shipping_city=city,
            delivery_zone=zone,
            line_items=[
                {"product_id": p.id, "sku": p.sku, "product_name": p.name, "quantity": qty, "unit_price": total}
                for p, qty in lines
            ],
        )
        for status in ("confirmed", "ready_to_ship", "shipped", "delivered"):
            order_service.transition_order(order.id, status, store_id=store.id)
        click.echo(f"PASS Order {order.order_number} (ID: {order.id}) delivered, {order.payment_type}")

    click.echo("\nDONE Run: python -m flask ledger pending --store-id " + str(store.id))


@ledger_group.command('pending')
@click.option('--store-id', required=True, type=int, help='Store ID')
@with_appcontext
def pending(store_id):
    """List delivered orders awaiting reconciliation."""
    groups = reconciliation_service.get_pending_reconciliation(store_id)
    if not groups:
        click.echo("Nothing pending.")
        return

    click.echo(f"{'Date':<12} {'Carrier':<24} {'Orders':>6} {'COD expected':>14} {'Prepaid':>8}")
    click.echo("-" * 68)
    for g in groups:
        click.echo(
            f"{g['delivery_date']:<12} {(g['carrier_name'] or '?'):<24} "
            f"{g['total_orders']:>6} {g['total_cod_expected']:>14} {g['total_prepaid']:>8}"
        )


@ledger_group.command('verify-stock')
@click.option('--product-id', required=True, type=int, help='Product ID')
@click.option('--store-id', type=int, default=None, help='Store ID (defaults to the product store)')
@with_appcontext
def verify_stock(product_id, store_id):
    """Replay the movement log of a product and compare with its current stock."""
    if store_id is None:
        product = db.session.get(Product, product_id)
        if product is None:
            raise click.ClickException(f"Product {product_id} not found")
        store_id = product.store_id

    try:
        report = inventory_service.replay_stock(store_id=store_id, product_id=product_id)
    except LedgerError as exc:
        raise click.ClickException(exc.message)

    click.echo(
        f"initial={report['initial_stock']} replayed={report['replayed_stock']} "
        f"current={report['current_stock']} movements={report['movement_count']}"
    )
    if report["consistent"]:
        click.echo("PASS Stock matches the movement log")
    else:
        click.echo("FAIL Stock does not match the movement log")
        raise SystemExit(1)


@ledger_group.command('verify-settlements')
@click.option('--store-id', required=True, type=int, help='Store ID')
@with_appcontext
def verify_settlements(store_id):
    """Check net_receivable == collected - carrier fees - failed fees for every settlement."""
    settlements = settlement_service.list_settlements(store_id, limit=100000)
    bad = [s for s in settlements if not settlement_service.verify_settlement(s)]

    for s in bad:
        click.echo(
            f"FAIL {s.settlement_code}: net={s.net_receivable} collected={s.total_cod_collected} "
            f"fees={s.total_carrier_fees} failed={s.failed_attempt_fee}"
        )
    click.echo(f"Checked {len(settlements)} settlements, {len(bad)} inconsistent")
    if bad:
        raise SystemExit(1)


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(ledger_group)
