from sqlalchemy import text

from salesflow.extensions import db
from salesflow.models import Order, Product
from salesflow.services import order_service

from conftest import fresh


def test_stock_audit_reports_clean_ledger(app, make_product):
    make_product(stock=5)

    result = app.test_cli_runner().invoke(args=["stock", "audit"])

    assert result.exit_code == 0
    assert "PASS Stock counters match the ledger" in result.output


def test_clean_orphans_requires_confirmation(app, db_session):
    result = app.test_cli_runner().invoke(args=["stock", "clean-orphans"])

    assert result.exit_code != 0
    assert "--yes" in result.output


def test_clean_orphans_prints_cleanup_and_rerun_audit(app, make_product, make_order):
    product = make_product(name="Bolt", stock=10)
    order = make_order([(product, 4)])
    order_service.delete_order(order.id, "manager", restock=False)

    result = app.test_cli_runner().invoke(args=["stock", "clean-orphans", "--yes"])

    assert result.exit_code == 0, result.output
    assert "Deleted 1 orphaned movement(s) totalling 4 unit(s)" in result.output
    assert "system=6 calculated=10 difference=-4" in result.output


def test_align_command(app, make_product):
    product = make_product(stock=10)
    db.session.execute(text("UPDATE products SET stock = 7 WHERE id = :id"), {"id": product.id})
    db.session.commit()

    result = app.test_cli_runner().invoke(
        args=["stock", "align", str(product.id), "--actor", "auditor", "--reason", "Recount"]
    )

    assert result.exit_code == 0, result.output
    assert "stock 7 -> 10" in result.output
    assert fresh(Product, product.id).stock == 10

    again = app.test_cli_runner().invoke(
        args=["stock", "align", str(product.id), "--actor", "auditor", "--reason", "Recount"]
    )
    assert again.exit_code != 0
    assert "already matches" in again.output


def test_repair_markers_command(app, make_product, make_order):
    order = make_order([(make_product(stock=3), 1)])
    db.session.execute(text("UPDATE orders SET stage = 'delivered' WHERE id = :id"), {"id": order.id})
    db.session.commit()

    result = app.test_cli_runner().invoke(args=["orders", "repair-markers"])

    assert result.exit_code == 0, result.output
    assert f"FIXED order {order.id}: separation, verification, invoicing, awaiting_delivery" in result.output
    assert fresh(Order, order.id).delivery_by == "seller"

    again = app.test_cli_runner().invoke(args=["orders", "repair-markers"])
    assert "No missing markers" in again.output


def test_repair_markers_unknown_order(app, db_session):
    result = app.test_cli_runner().invoke(args=["orders", "repair-markers", "--order-id", "77"])

    assert result.exit_code != 0
    assert "Order 77 not found" in result.output
