"""Request-scoped batching loaders for products and their reviews.

A ``DataLoader`` collects every ``load`` issued before the event loop gets
back to pending I/O and hands the deduplicated keys to one batch function.
Results are memoized for the lifetime of the loader, which is one request.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Hashable, List, Optional, Sequence, Tuple

from bson import ObjectId

from database import USER_PUBLIC_PROJECTION, sanitize

logger = logging.getLogger(__name__)

BatchLoadFn = Callable[[List[Any]], Awaitable[Sequence[Any]]]


class DataLoader:
    def __init__(self, batch_load_fn: BatchLoadFn, name: str = "loader"):
        self._batch_load_fn = batch_load_fn
        self.name = name
        self._cache: Dict[Hashable, asyncio.Future] = {}
        self._queue: List[Tuple[Hashable, asyncio.Future]] = []
        self._batches: set = set()

    def load(self, key: Hashable) -> "asyncio.Future":
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        loop = asyncio.get_running_loop()
        future = loop.create_future()
        self._cache[key] = future
        self._queue.append((key, future))
        if len(self._queue) == 1:
            loop.call_soon(self._dispatch)
        return future

    async def load_many(self, keys: Sequence[Hashable]) -> List[Any]:
        return list(await asyncio.gather(*[self.load(key) for key in keys]))

    def clear(self, key: Hashable) -> None:
        self._cache.pop(key, None)

    def prime(self, key: Hashable, value: Any) -> None:
        if key in self._cache:
            return
        future = asyncio.get_running_loop().create_future()
        future.set_result(value)
        self._cache[key] = future

    def _dispatch(self) -> None:
        pending, self._queue = self._queue, []
        if pending:
            task = asyncio.ensure_future(self._run_batch(pending))
            self._batches.add(task)
            task.add_done_callback(self._batches.discard)

    async def _run_batch(self, pending: List[Tuple[Hashable, asyncio.Future]]) -> None:
        # a key cleared and reloaded before dispatch is queued twice
        keys = list(dict.fromkeys(key for key, _ in pending))
        logger.debug(f"{self.name}: dispatching batch of {len(keys)} keys")
        try:
            values = list(await self._batch_load_fn(keys))
            if len(values) != len(keys):
                raise ValueError(
                    f"{self.name}: batch function returned {len(values)} values for {len(keys)} keys"
                )
        except Exception as e:
            for key, future in pending:
                if self._cache.get(key) is future:
                    del self._cache[key]
                if not future.done():
                    future.set_exception(e)
            return

        by_key = dict(zip(keys, values))
        for key, future in pending:
            if not future.done():
                future.set_result(by_key[key])


# Batch functions

def _object_ids(ids: Sequence[str]) -> List[ObjectId]:
    return [ObjectId(i) for i in ids if isinstance(i, str) and ObjectId.is_valid(i)]


async def batch_load_products(db, product_ids: List[str]) -> List[Optional[Dict]]:
    docs = await db["product"].find({"_id": {"$in": _object_ids(product_ids)}}).to_list(None)
    by_id = {str(d["_id"]): sanitize(d) for d in docs}
    return [by_id.get(pid) for pid in product_ids]


async def batch_load_reviews(db, product_ids: List[str]) -> List[List[Dict]]:
    """Reviews for each product id, each with its reviewer embedded as ``user``."""
    reviews = await db["review"].find({"product": {"$in": list(product_ids)}}).to_list(None)

    user_ids = list(dict.fromkeys(r["user"] for r in reviews))
    users = []
    if user_ids:
        users = await db["user"].find(
            {"_id": {"$in": _object_ids(user_ids)}}, USER_PUBLIC_PROJECTION
        ).to_list(None)
    user_map = {str(u["_id"]): sanitize(u) for u in users}

    review_map: Dict[str, List[Dict]] = {}
    for review in reviews:
        item = sanitize(review)
        item["user"] = user_map.get(review["user"])
        review_map.setdefault(review["product"], []).append(item)

    return [review_map.get(pid, []) for pid in product_ids]


@dataclass(frozen=True)
class Loaders:
    products: DataLoader
    reviews: DataLoader


def create_loaders(db) -> Loaders:
    """Fresh loaders for one request; never share them across requests."""
    return Loaders(
        products=DataLoader(lambda keys: batch_load_products(db, keys), name="products"),
        reviews=DataLoader(lambda keys: batch_load_reviews(db, keys), name="reviews"),
    )
