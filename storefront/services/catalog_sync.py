"""
Square catalog -> local products and services

Updates existing local products matched by SKU from the Square catalog, and
existing local services linked to a Square item through square_service_id.
The job never creates or deletes local rows. If the products table predates
the Square identifier columns, the job keeps going without them for the rest
of the run.
"""

import logging
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import update
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import Settings
from ..errors import NotConfigured, SchemaMismatch
from ..models import Product, ServiceItem
from .square_client import SquareClient
from .square_oauth import SquareOAuthManager

logger = logging.getLogger(__name__)

REMOTE_ID_COLUMNS = ("square_catalog_id", "square_item_id", "square_variation_id")

APPOINTMENTS_SERVICE = "APPOINTMENTS_SERVICE"

UNKNOWN_COLUMN_MARKERS = (
    "no such column",  # SQLite
    "has no column named",  # SQLite
    "unknown column",  # MySQL
    "undefinedcolumn",  # psycopg
)


def is_unknown_column_error(error: DBAPIError) -> bool:
    message = f"{type(error.orig).__name__} {error.orig}".lower()
    if any(marker in message for marker in UNKNOWN_COLUMN_MARKERS):
        return True
    # PostgreSQL: column "square_item_id" of relation "products" does not exist
    return "column" in message and "does not exist" in message


def is_missing_remote_id_column(error: DBAPIError) -> bool:
    """Unknown-column error naming one of the Square identifier columns"""
    if not is_unknown_column_error(error):
        return False
    message = str(error.orig).lower()
    return any(column in message for column in REMOTE_ID_COLUMNS)


def build_image_map(objects: list[dict[str, Any]]) -> dict[str, str]:
    images = {}
    for obj in objects:
        url = (obj.get("image_data") or {}).get("url")
        if obj.get("type") == "IMAGE" and obj.get("id") and url:
            images[obj["id"]] = url
    return images


def first_sellable_variation(item: dict[str, Any]) -> Optional[dict[str, Any]]:
    """First variation that carries both a SKU and a price"""
    for variation in (item.get("item_data") or {}).get("variations") or []:
        data = variation.get("item_variation_data") or {}
        amount = (data.get("price_money") or {}).get("amount")
        if data.get("sku") and amount is not None:
            return variation
    return None


def service_variation(item: dict[str, Any]) -> Optional[dict[str, Any]]:
    """First variation Square has assigned an id to"""
    for variation in (item.get("item_data") or {}).get("variations") or []:
        if variation.get("id"):
            return variation
    return None


def service_values(item: dict[str, Any], variation: dict[str, Any]) -> dict[str, Any]:
    item_data = item.get("item_data") or {}
    data = variation.get("item_variation_data") or {}
    values: dict[str, Any] = {"square_variation_id": variation["id"]}
    if variation.get("version") is not None:
        values["square_variation_version"] = str(variation["version"])
    if item_data.get("name"):
        values["title"] = item_data["name"].strip()
    if item_data.get("description"):
        values["description"] = item_data["description"].strip()
    amount = (data.get("price_money") or {}).get("amount")
    if amount is not None:
        values["price"] = Decimal(int(amount)) / 100
    # service_duration is in milliseconds
    if data.get("service_duration"):
        values["duration_minutes"] = max(1, int(data["service_duration"]) // 60000)
    return values


class CatalogSyncService:
    def __init__(
        self,
        db: Session,
        settings: Settings,
        oauth: SquareOAuthManager,
        client: SquareClient,
    ):
        self.db = db
        self.settings = settings
        self.oauth = oauth
        self.client = client
        self._include_remote_ids = True

    def _apply_update(self, sku: str, values: dict[str, Any]) -> int:
        if not self._include_remote_ids:
            values = {k: v for k, v in values.items() if k not in REMOTE_ID_COLUMNS}
        table = Product.__table__
        try:
            result = self.db.execute(update(table).where(table.c.sku == sku).values(**values))
            self.db.commit()
        except DBAPIError as e:
            self.db.rollback()
            if self._include_remote_ids and is_missing_remote_id_column(e):
                raise SchemaMismatch() from e
            raise
        return result.rowcount

    def _update_product(self, sku: str, values: dict[str, Any]) -> int:
        try:
            return self._apply_update(sku, values)
        except SchemaMismatch:
            logger.warning(
                "⚠️ products table has no Square identifier columns - "
                "syncing name/price/description/image only for this run"
            )
            self._include_remote_ids = False
            return self._apply_update(sku, values)

    def _linked_service_ids(self) -> set[str]:
        try:
            rows = (
                self.db.query(ServiceItem.square_service_id)
                .filter(ServiceItem.square_service_id.isnot(None))
                .all()
            )
        except DBAPIError as e:
            self.db.rollback()
            logger.warning(f"⚠️ Could not read linked services, syncing products only: {e.orig}")
            return set()
        return {row[0] for row in rows}

    def _update_service(self, square_service_id: str, values: dict[str, Any]) -> int:
        table = ServiceItem.__table__
        try:
            result = self.db.execute(
                update(table).where(table.c.square_service_id == square_service_id).values(**values)
            )
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise
        return result.rowcount

    def _sync_service(self, item: dict[str, Any]) -> bool:
        variation = service_variation(item)
        if variation is None:
            return False
        return bool(self._update_service(item["id"], service_values(item, variation)))

    def _product_values(
        self, item: dict[str, Any], variation: dict[str, Any], images: dict[str, str]
    ) -> dict[str, Any]:
        item_data = item.get("item_data") or {}
        variation_data = variation["item_variation_data"]
        values: dict[str, Any] = {
            "price": Decimal(int(variation_data["price_money"]["amount"])) / 100,
            "square_catalog_id": item.get("id"),
            "square_item_id": item.get("id"),
            "square_variation_id": variation.get("id"),
        }
        if item_data.get("name"):
            values["name"] = item_data["name"].strip()
        if item_data.get("description"):
            values["description"] = item_data["description"].strip()
        image_ids = item_data.get("image_ids") or []
        if image_ids and image_ids[0] in images:
            values["image_url"] = images[image_ids[0]]
        return values

    async def run(self) -> dict[str, int]:
        if not (self.settings.square_sync_enabled and self.settings.square_enabled):
            raise NotConfigured("Square catalog sync is not enabled")

        access_token = await self.oauth.resolve_access_token()
        objects = await self.client.list_catalog(access_token, types="ITEM,IMAGE")
        images = build_image_map(objects)
        items = [obj for obj in objects if obj.get("type") == "ITEM"]
        logger.info(f"[SquareCatalog] Fetched {len(items)} items and {len(images)} images")

        self._include_remote_ids = True
        linked_services = self._linked_service_ids()
        updated = skipped = errors = services = 0

        for item in items:
            if item.get("id") in linked_services:
                try:
                    matched = self._sync_service(item)
                except SQLAlchemyError as e:
                    logger.error(f"[SquareCatalog] Error processing service {item['id']}: {e}")
                    errors += 1
                    continue
                if matched:
                    updated += 1
                    services += 1
                else:
                    skipped += 1
                continue

            if (item.get("item_data") or {}).get("product_type") == APPOINTMENTS_SERVICE:
                # Not linked to any local service
                skipped += 1
                continue

            variation = first_sellable_variation(item)
            if variation is None:
                skipped += 1
                continue

            sku = variation["item_variation_data"]["sku"]
            try:
                matched = self._update_product(sku, self._product_values(item, variation, images))
            except SQLAlchemyError as e:
                logger.error(f"[SquareCatalog] Error processing SKU {sku}: {e}")
                errors += 1
                continue

            if matched:
                updated += 1
            else:
                # No local product with this SKU - the job only updates existing rows
                skipped += 1

        result = {"total": len(items), "updated": updated, "skipped": skipped, "errors": errors}
        logger.info(
            f"[SquareCatalog] env={self.settings.square_environment} total={result['total']} "
            f"updated={updated} skipped={skipped} errors={errors} (services={services})"
        )
        return result
