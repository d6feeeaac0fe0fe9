"""
Catalog lookups for coupon scoping.

Resolves cart line items to products so prices and categories always come
from the database, never from the client.
"""

import logging
import uuid
from typing import Dict, Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from coupon_api.models.product import Product

logger = logging.getLogger(__name__)


class CatalogService:
    """Read-only access to products and their categories."""

    async def get_products(
        self,
        db: AsyncSession,
        product_ids: Iterable[uuid.UUID],
    ) -> Dict[str, Product]:
        """
        Fetch products by ID in a single query.

        Args:
            db: Database session.
            product_ids: IDs to look up. Duplicates are fine.

        Returns:
            Dict keyed by the string form of each product ID found.
            Unknown IDs are simply absent.
        """
        ids = {uuid.UUID(str(product_id)) for product_id in product_ids}
        if not ids:
            return {}

        result = await db.execute(
            select(Product).where(Product.id.in_(ids))
        )
        products = {str(product.id): product for product in result.scalars()}

        missing = len(ids) - len(products)
        if missing:
            logger.debug(f"{missing} cart product(s) not found in catalog")

        return products


# Global service instance
catalog_service = CatalogService()
