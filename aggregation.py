"""Keeps a product's rating, review count and review list in step with its reviews."""

import logging

from database import now, to_obj_id

logger = logging.getLogger(__name__)

DEFAULT_RATING = 0


async def recompute_product_rating(db, product_id: str) -> None:
    """Best effort: failures are logged and never undo the review write."""
    try:
        reviews = await db["review"].find({"product": product_id}, {"rating": 1}).to_list(None)
        ratings = [r["rating"] for r in reviews]
        rating = sum(ratings) / len(ratings) if ratings else DEFAULT_RATING
        res = await db["product"].update_one(
            {"_id": to_obj_id(product_id)},
            {"$set": {
                "rating": rating,
                "num_reviews": len(ratings),
                "reviews": [str(r["_id"]) for r in reviews],
                "updated_at": now(),
            }},
        )
    except Exception:
        logger.exception(f"Failed to recompute rating for product {product_id}")
        return

    if res.matched_count == 0:
        logger.warning(f"Rating not updated: product {product_id} no longer exists")
