"""Per-request context threaded through every operation."""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from config import Settings
from loaders import Loaders, create_loaders
from mailer import Mailer


@dataclass(frozen=True)
class RequestContext:
    db: Any
    settings: Settings
    mailer: Mailer
    loaders: Loaders
    user: Optional[Dict] = None


def build_context(db, settings: Settings, mailer: Mailer, user: Optional[Dict] = None) -> RequestContext:
    return RequestContext(
        db=db,
        settings=settings,
        mailer=mailer,
        loaders=create_loaders(db),
        user=user,
    )
