from dataclasses import replace
from decimal import Decimal

import httpx
import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.exc import OperationalError
from sqlalchemy.pool import StaticPool

from storefront.database import build_session_factory
from storefront.errors import NotConfigured
from storefront.models import Product, ServiceItem
from storefront.services.catalog_sync import (
    CatalogSyncService,
    first_sellable_variation,
    is_missing_remote_id_column,
)
from storefront.services.square_client import SquareClient

CATALOG = "/v2/catalog/list"


def item(item_id, sku, amount, name="Item", image_ids=None, description=None):
    variation_data = {"name": "Regular"}
    if sku:
        variation_data["sku"] = sku
    if amount is not None:
        variation_data["price_money"] = {"amount": amount, "currency": "USD"}
    return {
        "type": "ITEM",
        "id": item_id,
        "item_data": {
            "name": name,
            "description": description,
            "image_ids": image_ids or [],
            "variations": [{"type": "ITEM_VARIATION", "id": f"{item_id}-VAR", "item_variation_data": variation_data}],
        },
    }


def paged_catalog(pages):
    """Serve pages in order, linked by cursors"""

    def handler(request):
        cursor = request.url.params.get("cursor")
        index = int(cursor) if cursor else 0
        body = {"objects": pages[index]}
        if index + 1 < len(pages):
            body["cursor"] = str(index + 1)
        return httpx.Response(200, json=body)

    return handler


def build_sync(db, settings, oauth_factory, fake_square):
    client = SquareClient(settings, transport=httpx.MockTransport(fake_square))
    return CatalogSyncService(db, settings, oauth_factory(settings), client)


@pytest.mark.anyio
async def test_updates_existing_products_by_sku(db, static_settings, oauth_factory, fake_square, make_product):
    make_product(name="Old soap name", price="1.00", sku="SOAP-1", variation_id=None)
    fake_square.on(
        "GET",
        CATALOG,
        handler=paged_catalog(
            [
                [
                    item("ITEM-SOAP", "SOAP-1", 1299, name="  Lavender Soap ", image_ids=["IMG1"], description="Handmade"),
                    {"type": "IMAGE", "id": "IMG1", "image_data": {"url": "https://cdn.example.com/soap.jpg"}},
                ],
                [
                    item("ITEM-NOSKU", None, 500),
                    item("ITEM-REMOTE-ONLY", "NOT-LOCAL", 800),
                ],
            ]
        ),
    )

    result = await build_sync(db, static_settings, oauth_factory, fake_square).run()

    assert result == {"total": 3, "updated": 1, "skipped": 2, "errors": 0}
    assert [r.url.params.get("types") for r in fake_square.calls("GET", CATALOG)] == ["ITEM,IMAGE", "ITEM,IMAGE"]

    db.expire_all()
    product = db.query(Product).filter(Product.sku == "SOAP-1").one()
    assert product.name == "Lavender Soap"
    assert product.description == "Handmade"
    assert product.price == Decimal("12.99")
    assert product.image_url == "https://cdn.example.com/soap.jpg"
    assert product.square_item_id == "ITEM-SOAP"
    assert product.square_catalog_id == "ITEM-SOAP"
    assert product.square_variation_id == "ITEM-SOAP-VAR"


@pytest.mark.anyio
async def test_sync_never_creates_products(db, static_settings, oauth_factory, fake_square):
    fake_square.on("GET", CATALOG, {"objects": [item("ITEM-1", "NEW-SKU", 100)]})

    result = await build_sync(db, static_settings, oauth_factory, fake_square).run()

    assert result["skipped"] == 1
    assert db.query(Product).count() == 0


@pytest.mark.anyio
async def test_sync_requires_flag(db, static_settings, oauth_factory, fake_square):
    settings = replace(static_settings, square_sync_enabled=False)

    with pytest.raises(NotConfigured):
        await build_sync(db, settings, oauth_factory, fake_square).run()

    assert fake_square.requests == []


@pytest.mark.anyio
async def test_degrades_when_products_table_lacks_square_columns(static_settings, oauth_factory, fake_square):
    legacy_engine = create_engine(
        "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool
    )
    with legacy_engine.begin() as conn:
        conn.exec_driver_sql(
            """
            CREATE TABLE products (
                id INTEGER PRIMARY KEY,
                name VARCHAR(255) NOT NULL,
                description TEXT,
                price NUMERIC(10, 2) NOT NULL,
                image_url VARCHAR(500),
                sku VARCHAR(100) UNIQUE,
                is_visible BOOLEAN NOT NULL DEFAULT 1,
                created_at DATETIME,
                updated_at DATETIME
            )
            """
        )
        conn.exec_driver_sql("INSERT INTO products (name, price, sku) VALUES ('Soap', 1.00, 'SOAP-1')")
        conn.exec_driver_sql("INSERT INTO products (name, price, sku) VALUES ('Candle', 2.00, 'CANDLE-1')")

    legacy_db = build_session_factory(legacy_engine)()
    fake_square.on(
        "GET",
        CATALOG,
        {"objects": [item("ITEM-SOAP", "SOAP-1", 1299), item("ITEM-CANDLE", "CANDLE-1", 550)]},
    )

    try:
        result = await build_sync(legacy_db, static_settings, oauth_factory, fake_square).run()
        prices = dict(legacy_db.execute(text("SELECT sku, price FROM products")).all())
    finally:
        legacy_db.close()
        legacy_engine.dispose()

    assert result == {"total": 2, "updated": 2, "skipped": 0, "errors": 0}
    assert Decimal(str(prices["SOAP-1"])) == Decimal("12.99")
    assert Decimal(str(prices["CANDLE-1"])) == Decimal("5.5")


def test_first_sellable_variation_needs_sku_and_price():
    assert first_sellable_variation(item("A", None, 100)) is None
    assert first_sellable_variation(item("A", "SKU", None)) is None
    assert first_sellable_variation(item("A", "SKU", 0))["id"] == "A-VAR"


def appointment_service(item_id, variation_id, version, amount, duration_ms, name="Service"):
    return {
        "type": "ITEM",
        "id": item_id,
        "item_data": {
            "name": name,
            "product_type": "APPOINTMENTS_SERVICE",
            "variations": [
                {
                    "type": "ITEM_VARIATION",
                    "id": variation_id,
                    "version": version,
                    "item_variation_data": {
                        "name": "60 min",
                        "price_money": {"amount": amount, "currency": "USD"},
                        "service_duration": duration_ms,
                    },
                }
            ],
        },
    }


@pytest.mark.anyio
async def test_links_services_by_square_service_id(db, static_settings, oauth_factory, fake_square):
    linked = ServiceItem(title="Massage", duration_minutes=30, square_service_id="ITEM-MASSAGE")
    db.add(linked)
    db.commit()
    fake_square.on(
        "GET",
        CATALOG,
        {
            "objects": [
                appointment_service("ITEM-MASSAGE", "MASSAGE-VAR", 1700000000000, 9000, 3600000, name=" Deep Tissue "),
                appointment_service("ITEM-UNLINKED", "FACIAL-VAR", 1, 5000, 1800000),
            ]
        },
    )

    result = await build_sync(db, static_settings, oauth_factory, fake_square).run()

    assert result == {"total": 2, "updated": 1, "skipped": 1, "errors": 0}
    assert db.query(ServiceItem).count() == 1
    db.expire_all()
    service = db.query(ServiceItem).one()
    assert service.square_variation_id == "MASSAGE-VAR"
    assert service.square_variation_version == "1700000000000"
    assert service.title == "Deep Tissue"
    assert service.price == Decimal("90.00")
    assert service.duration_minutes == 60


@pytest.mark.anyio
async def test_unrelated_missing_column_keeps_square_ids(static_settings, oauth_factory, fake_square):
    legacy_engine = create_engine(
        "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool
    )
    with legacy_engine.begin() as conn:
        conn.exec_driver_sql(
            """
            CREATE TABLE products (
                id INTEGER PRIMARY KEY,
                name VARCHAR(255) NOT NULL,
                description TEXT,
                price NUMERIC(10, 2) NOT NULL,
                sku VARCHAR(100) UNIQUE,
                square_catalog_id VARCHAR(255),
                square_item_id VARCHAR(255),
                square_variation_id VARCHAR(255),
                updated_at DATETIME
            )
            """
        )
        conn.exec_driver_sql("INSERT INTO products (name, price, sku) VALUES ('Soap', 1.00, 'SOAP-1')")
        conn.exec_driver_sql("INSERT INTO products (name, price, sku) VALUES ('Candle', 2.00, 'CANDLE-1')")

    legacy_db = build_session_factory(legacy_engine)()
    fake_square.on(
        "GET",
        CATALOG,
        {
            "objects": [
                item("ITEM-SOAP", "SOAP-1", 1299, image_ids=["IMG1"]),
                {"type": "IMAGE", "id": "IMG1", "image_data": {"url": "https://cdn.example.com/soap.jpg"}},
                item("ITEM-CANDLE", "CANDLE-1", 550),
            ]
        },
    )

    try:
        result = await build_sync(legacy_db, static_settings, oauth_factory, fake_square).run()
        ids = dict(legacy_db.execute(text("SELECT sku, square_item_id FROM products")).all())
    finally:
        legacy_db.close()
        legacy_engine.dispose()

    assert result == {"total": 2, "updated": 1, "skipped": 0, "errors": 1}
    assert ids == {"SOAP-1": None, "CANDLE-1": "ITEM-CANDLE"}


def test_only_identifier_columns_trigger_degrade():
    def error(message):
        return OperationalError("UPDATE products", {}, Exception(message))

    assert is_missing_remote_id_column(error("no such column: square_item_id"))
    assert is_missing_remote_id_column(
        error('column "square_variation_id" of relation "products" does not exist')
    )
    assert not is_missing_remote_id_column(error("no such column: image_url"))
    assert not is_missing_remote_id_column(error("database is locked"))
