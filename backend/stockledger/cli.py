# Overview: Flask CLI command groups for bootstrap, stock inspection, and order lifecycle operations.

# backend/stockledger/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP (PowerShell: $env:FLASK_APP="stockledger"; bash: export FLASK_APP=stockledger).
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init-db
#   Create all tables (use `flask db upgrade` for migration-managed databases).
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
# - python -m flask system seed-demo
#   Create a small demo catalog when no products exist.
#
# Stock inspection/adjustment:
# - python -m flask stock show 1 [--variant-id 2]
#   Current stock and display status for a product or variant.
# - python -m flask stock check 1=2 1:2=5
#   Validate cart lines (product[:variant]=quantity) without changing anything.
# - python -m flask stock adjust 1 --reason "Broken in transit" --type DAMAGE -- -3
#   Signed manual adjustment (ADJUSTMENT, RESTOCK, DAMAGE).
# - python -m flask stock history --product-id 1 --type PURCHASE --page 1
#   Browse stock history, newest first, with per-type totals.
# - python -m flask stock audit 1 [--variant-id 2]
#   Verify the history chain of one product/variant against its current stock.
#
# Order lifecycle:
# - python -m flask orders create 1=2 1:2=1 [--user-id 7]
# - python -m flask orders pay 12
# - python -m flask orders refund 12
# - python -m flask orders set-status 12 SHIPPED [--user-id 7]
# - python -m flask orders cleanup-pending [--hours 24]
#   Cancel PENDING orders older than the given age.

from datetime import timedelta

import click
from flask import current_app
from flask.cli import with_appcontext

from .errors import StockError
from .extensions import db
from .models import Order, Product, Variant
from .models.orders import VALID_ORDER_STATUSES
from .models.stock import VALID_STOCK_CHANGE_TYPES
from .services import inventory_service, ledger_service, order_processing_service
from .services import stock_validation_service
from .validation import ADMIN_ADJUSTMENT_TYPES, StockItem, ValidationError, coerce_int, coerce_quantity


def parse_line_item(raw: str) -> StockItem:
    """Parse 'product=qty' or 'product:variant=qty'."""
    target, sep, quantity = raw.partition("=")
    if not sep:
        raise click.BadParameter(f"expected product[:variant]=quantity, got {raw!r}")
    product_id, _, variant_id = target.partition(":")
    try:
        return StockItem(
            product_id=coerce_int("product_id", product_id),
            variant_id=coerce_int("variant_id", variant_id) if variant_id else None,
            quantity=coerce_quantity(quantity),
        )
    except ValidationError as exc:
        raise click.BadParameter(str(exc))


def _echo_order_result(result) -> None:
    prefix = "PASS" if result.success else "FAIL"
    click.echo(f"{prefix} Order {result.order_id}: {result.message}")
    for change in result.stock_changes or []:
        target = f"product {change.product_id}"
        if change.variant_id is not None:
            target += f" variant {change.variant_id}"
        if change.success:
            click.echo(f"  ok    {target} -> {change.new_stock}")
        else:
            click.echo(f"  error {target}: {change.error}")


# =============================================================================
# SYSTEM COMMANDS
# =============================================================================

@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables that do not exist yet."""
    db.create_all()
    click.echo("PASS Tables created.")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA, including stock history!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("PASS Database reset complete.")


@system_group.command('seed-demo')
@with_appcontext
def seed_demo():
    """Create a small demo catalog (idempotent: skipped when products exist)."""
    if db.session.query(Product).count():
        click.echo("SKIP Products already exist.")
        return

    tee = Product(name="Classic Tee", price_cents=1999, stock=50)
    tee.variants = [
        Variant(name="Small", stock=12),
        Variant(name="Medium", stock=30),
        Variant(name="Large", stock=4),
    ]
    mug = Product(name="Enamel Mug", price_cents=1250, stock=8)
    poster = Product(name="Launch Poster", price_cents=900, stock=0)
    db.session.add_all([tee, mug, poster])
    db.session.commit()

    click.echo(f"PASS Seeded {db.session.query(Product).count()} products.")


# =============================================================================
# STOCK COMMANDS
# =============================================================================

@click.group('stock')
def stock_group():
    """Stock inspection and manual adjustment commands."""


@stock_group.command('show')
@click.argument('product_id', type=int)
@click.option('--variant-id', type=int, help='Variant ID (defaults to product-level stock)')
@with_appcontext
def show_stock(product_id, variant_id):
    """Show current stock and its display status."""
    try:
        target = ledger_service.load_stock_target(db.session, product_id, variant_id)
    except StockError as exc:
        click.echo(f"FAIL {exc}")
        return

    stock = ledger_service.get_current_stock(db.session, product_id, variant_id)
    status = inventory_service.get_stock_status(stock)
    click.echo(f"{target.label}: {stock} ({status.status}, {status.label})")

    if variant_id is None and target.product.variants:
        for variant in target.product.variants:
            v_status = inventory_service.get_stock_status(variant.stock)
            click.echo(f"  variant {variant.id:<5} {variant.name:<20} {variant.stock:<6} {v_status.status}")


@stock_group.command('check')
@click.argument('items', nargs=-1, required=True)
@with_appcontext
def check_stock(items):
    """Validate cart lines (product[:variant]=quantity) against current stock."""
    lines = [parse_line_item(raw) for raw in items]
    validation = stock_validation_service.validate_cart_stock(db.session, lines)
    if validation.is_valid:
        click.echo("PASS All items are available.")
        return

    click.echo("FAIL Some items are not available:")
    for result in validation.invalid_items:
        click.echo(f"  {stock_validation_service.format_stock_error_message(result)}")


@stock_group.command('adjust')
@click.argument('product_id', type=int)
@click.argument('adjustment', type=int)
@click.option('--variant-id', type=int, help='Variant ID')
@click.option('--reason', required=True, help='Why the stock changed')
@click.option('--type', 'change_type', type=click.Choice(sorted(ADMIN_ADJUSTMENT_TYPES)),
              default='ADJUSTMENT', show_default=True)
@click.option('--user-id', type=int, help='Acting user ID (recorded in history)')
@with_appcontext
def adjust_stock_cli(product_id, adjustment, variant_id, reason, change_type, user_id):
    """Apply a signed stock adjustment (negative values decrease)."""
    result = inventory_service.adjust_stock(
        db.session,
        product_id,
        adjustment,
        variant_id,
        reason=reason,
        change_type=change_type,
        user_id=user_id,
    )
    if not result.success:
        click.echo(f"FAIL {result.error}")
        return

    current_app.logger.info(
        "Admin stock adjustment: %s for product %s%s",
        adjustment, product_id, f" variant {variant_id}" if variant_id else "",
    )
    direction = "increased" if adjustment > 0 else "decreased"
    click.echo(f"PASS Stock {direction} by {abs(adjustment)}. New stock: {result.new_stock}")


@stock_group.command('history')
@click.option('--product-id', type=int)
@click.option('--variant-id', type=int)
@click.option('--type', 'change_type', type=click.Choice(sorted(VALID_STOCK_CHANGE_TYPES)))
@click.option('--order-id', type=int)
@click.option('--page', type=int, default=1, show_default=True)
@click.option('--limit', type=int, help='Rows per page (defaults to STOCK_HISTORY_PAGE_SIZE)')
@with_appcontext
def stock_history(product_id, variant_id, change_type, order_id, page, limit):
    """Browse stock history, newest first."""
    filters = dict(product_id=product_id, variant_id=variant_id, change_type=change_type, order_id=order_id)
    history = ledger_service.list_stock_history(
        db.session,
        page=page,
        limit=limit or current_app.config["STOCK_HISTORY_PAGE_SIZE"],
        **filters,
    )

    if not history.records:
        click.echo("No stock history found.")
        return

    click.echo("\n" + "=" * 100)
    click.echo(f"{'ID':<6} {'When':<20} {'Type':<11} {'Product':<8} {'Variant':<8} {'Qty':>6} {'Before':>7} {'After':>7}  Reason")
    click.echo("=" * 100)
    for r in history.records:
        click.echo(
            f"{r.id:<6} {str(r.created_at)[:19]:<20} {r.type:<11} {r.product_id:<8} {r.variant_id or '-':<8} "
            f"{r.quantity:>+6} {r.previous_stock:>7} {r.new_stock:>7}  {r.reason[:40]}"
        )
    click.echo("=" * 100)
    click.echo(f"Page {history.page}/{history.pages} ({history.total} records)")

    summary = ledger_service.summarize_stock_history(db.session, **filters)
    for change_type_name, totals in sorted(summary.items()):
        click.echo(f"  {change_type_name:<11} {totals['count']:>5} change(s), net {totals['total_quantity']:+d}")
    click.echo("")


@stock_group.command('audit')
@click.argument('product_id', type=int)
@click.option('--variant-id', type=int)
@with_appcontext
def audit_stock(product_id, variant_id):
    """Check the stock history chain against the current stock value."""
    try:
        problems = ledger_service.audit_stock_history(db.session, product_id, variant_id)
    except StockError as exc:
        click.echo(f"FAIL {exc}")
        return

    if not problems:
        click.echo("PASS Stock history is consistent.")
        return

    click.echo(f"FAIL {len(problems)} problem(s) found:")
    for problem in problems:
        click.echo(f"  {problem}")


# =============================================================================
# ORDER COMMANDS
# =============================================================================

@click.group('orders')
def orders_group():
    """Order lifecycle commands (payment, refund, status changes)."""


@orders_group.command('create')
@click.argument('items', nargs=-1, required=True)
@click.option('--user-id', type=int)
@with_appcontext
def create_order_cli(items, user_id):
    """Create a PENDING order from product[:variant]=quantity lines."""
    lines = [parse_line_item(raw) for raw in items]
    try:
        order = order_processing_service.create_pending_order(db.session, lines, user_id=user_id)
    except (ValidationError, StockError) as exc:
        click.echo(f"FAIL {exc}")
        return
    click.echo(f"PASS Created order {order.id} ({len(order.items)} line(s), status {order.status})")


@orders_group.command('pay')
@click.argument('order_id', type=int)
@click.option('--user-id', type=int)
@with_appcontext
def pay_order(order_id, user_id):
    """Confirm payment: decrement stock and mark the order PAID."""
    result = order_processing_service.process_order_payment(db.session, order_id, user_id=user_id)
    _echo_order_result(result)


@orders_group.command('refund')
@click.argument('order_id', type=int)
@click.option('--user-id', type=int)
@with_appcontext
def refund_order(order_id, user_id):
    """Refund: restore stock and mark the order REFUNDED."""
    result = order_processing_service.process_order_refund(db.session, order_id, user_id=user_id)
    _echo_order_result(result)


@orders_group.command('set-status')
@click.argument('order_id', type=int)
@click.argument('status', type=click.Choice(sorted(VALID_ORDER_STATUSES)))
@click.option('--user-id', type=int)
@with_appcontext
def set_order_status(order_id, status, user_id):
    """Change an order's status, applying stock changes where the transition requires it."""
    result = order_processing_service.handle_order_status_change(db.session, order_id, status, user_id)
    _echo_order_result(result)


@orders_group.command('cleanup-pending')
@click.option('--hours', type=int, help='Age threshold (defaults to PENDING_ORDER_TTL_HOURS)')
@with_appcontext
def cleanup_pending_orders(hours):
    """Cancel PENDING orders older than the threshold. No stock is touched."""
    hours = hours if hours is not None else current_app.config["PENDING_ORDER_TTL_HOURS"]
    pending = db.session.query(Order).filter_by(status="PENDING").count()
    click.echo(f"Found {pending} PENDING order(s)")

    cancelled = order_processing_service.cancel_stale_pending_orders(
        db.session, older_than=timedelta(hours=hours)
    )
    click.echo(f"PASS Cancelled {cancelled} PENDING order(s) older than {hours} hour(s).")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(stock_group)
    app.cli.add_command(orders_group)
