"""
Read access to the known-merchant catalog, plus catalog seeding.

The catalog is read-mostly: entries are loaded once per instance and shared by
every match performed through it. The popularity counter is the only write.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from subradar.models import KnownMerchant

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CatalogEntry:
    """Detached, read-only snapshot of a KnownMerchant row."""
    id: Optional[UUID]
    name: str
    display_name: str
    category: str
    keywords: List[str] = field(default_factory=list)
    countries: List[str] = field(default_factory=list)
    currencies: List[str] = field(default_factory=list)
    typical_amounts: Dict[str, float] = field(default_factory=dict)
    billing_cycles: List[str] = field(default_factory=list)

    @classmethod
    def from_model(cls, merchant: KnownMerchant) -> "CatalogEntry":
        return cls(
            id=merchant.id,
            name=merchant.name,
            display_name=merchant.display_name or merchant.name,
            category=merchant.category,
            keywords=list(merchant.keywords or []),
            countries=[c.upper() for c in (merchant.countries or [])],
            currencies=[c.upper() for c in (merchant.currencies or [])],
            typical_amounts={
                str(code).upper(): float(value)
                for code, value in (merchant.typical_amounts or {}).items()
                if value is not None
            },
            billing_cycles=list(merchant.billing_cycles or []),
        )


class KnownMerchantCatalog:
    """
    Catalog reader backed by the known_merchants table.

    Usage:
        catalog = KnownMerchantCatalog(db)
        entries = catalog.list_active()
    """

    def __init__(self, db: Session):
        self.db = db
        self._entries: Optional[List[CatalogEntry]] = None

    def list_active(self) -> List[CatalogEntry]:
        """Active catalog entries, cached after the first load."""
        if self._entries is None:
            merchants = (
                self.db.query(KnownMerchant)
                .filter(KnownMerchant.is_active.is_(True))
                .order_by(KnownMerchant.name.asc())
                .all()
            )
            self._entries = [CatalogEntry.from_model(m) for m in merchants]
            logger.debug(f"[MERCHANT_CATALOG] Loaded {len(self._entries)} active merchants")
        return self._entries

    def refresh(self) -> None:
        self._entries = None

    def increment_match_count(self, merchant_id: Optional[UUID]) -> bool:
        """
        Bump the popularity counter for a catalog entry.

        Best effort: races are tolerated and failures are logged, not raised.
        The update runs in a savepoint so a failure leaves the caller's
        transaction usable.
        """
        if merchant_id is None:
            return False
        try:
            with self.db.begin_nested():
                self.db.execute(
                    update(KnownMerchant)
                    .where(KnownMerchant.id == merchant_id)
                    .values(match_count=KnownMerchant.match_count + 1)
                )
            return True
        except SQLAlchemyError as exc:
            logger.warning(
                f"[MERCHANT_CATALOG] Failed to increment match count for {merchant_id}: {exc}"
            )
            return False


class StaticMerchantCatalog:
    """In-memory catalog, used where no database is involved."""

    def __init__(self, entries: Iterable[CatalogEntry]):
        self._entries = list(entries)
        self.match_counts: Dict[Any, int] = {}

    def list_active(self) -> List[CatalogEntry]:
        return self._entries

    def increment_match_count(self, merchant_id: Optional[UUID]) -> bool:
        if merchant_id is None:
            return False
        self.match_counts[merchant_id] = self.match_counts.get(merchant_id, 0) + 1
        return True


def upsert_known_merchants(db: Session, entries: Iterable[Dict[str, Any]]) -> Dict[str, int]:
    """
    Insert or update catalog entries by their unique name.

    Entries without a name, display name or category are skipped.
    Updated entries are reactivated.

    Returns:
        {"created": n, "updated": n, "skipped": n}
    """
    stats = {"created": 0, "updated": 0, "skipped": 0}

    for entry in entries:
        name = (entry.get("name") or "").strip()
        if not name or not entry.get("display_name") or not entry.get("category"):
            logger.warning(f"[MERCHANT_CATALOG] Skipping incomplete catalog entry: {entry!r}")
            stats["skipped"] += 1
            continue

        values = {
            "display_name": entry["display_name"],
            "category": entry["category"],
            "keywords": list(entry.get("keywords") or []),
            "countries": list(entry.get("countries") or []),
            "currencies": list(entry.get("currencies") or []),
            "typical_amounts": dict(entry.get("typical_amounts") or {}),
            "billing_cycles": list(entry.get("billing_cycles") or []),
            "website": entry.get("website"),
            "is_active": True,
        }

        existing = db.query(KnownMerchant).filter(KnownMerchant.name == name).first()
        if existing:
            for key, value in values.items():
                setattr(existing, key, value)
            stats["updated"] += 1
        else:
            db.add(KnownMerchant(name=name, match_count=0, **values))
            stats["created"] += 1

    db.commit()
    logger.info(
        f"[MERCHANT_CATALOG] Catalog upsert: {stats['created']} created, "
        f"{stats['updated']} updated, {stats['skipped']} skipped"
    )
    return stats


# Well-known subscription providers shipped with the service.
DEFAULT_KNOWN_MERCHANTS: List[Dict[str, Any]] = [
    {
        "name": "netflix",
        "display_name": "Netflix",
        "category": "Streaming",
        "website": "https://www.netflix.com",
        "keywords": ["netflix", "netflix.com"],
        "countries": ["US", "GB", "CA", "AU", "DE", "FR", "NL", "IE"],
        "currencies": ["USD", "GBP", "CAD", "AUD", "EUR"],
        "typical_amounts": {"USD": 15.49, "GBP": 10.99, "EUR": 13.99, "CAD": 16.49, "AUD": 16.99},
        "billing_cycles": ["monthly"],
    },
    {
        "name": "spotify",
        "display_name": "Spotify",
        "category": "Music",
        "website": "https://www.spotify.com",
        "keywords": ["spotify", "spotify usa", "spotify ab"],
        "countries": ["US", "GB", "CA", "AU", "DE", "FR", "NL", "IE"],
        "currencies": ["USD", "GBP", "CAD", "AUD", "EUR"],
        "typical_amounts": {"USD": 11.99, "GBP": 11.99, "EUR": 10.99},
        "billing_cycles": ["monthly"],
    },
    {
        "name": "disney_plus",
        "display_name": "Disney+",
        "category": "Streaming",
        "website": "https://www.disneyplus.com",
        "keywords": ["disney plus", "disneyplus", "disney+"],
        "countries": ["US", "GB", "CA", "AU", "DE", "FR", "NL", "IE"],
        "currencies": ["USD", "GBP", "CAD", "AUD", "EUR"],
        "typical_amounts": {"USD": 13.99, "GBP": 7.99, "EUR": 8.99},
        "billing_cycles": ["monthly", "yearly"],
    },
    {
        "name": "youtube_premium",
        "display_name": "YouTube Premium",
        "category": "Streaming",
        "website": "https://www.youtube.com/premium",
        "keywords": ["youtube premium", "youtube", "youtubepremium"],
        "countries": ["US", "GB", "CA", "AU", "DE", "FR", "NL", "IE"],
        "currencies": ["USD", "GBP", "CAD", "AUD", "EUR"],
        "typical_amounts": {"USD": 13.99, "GBP": 12.99, "EUR": 12.99},
        "billing_cycles": ["monthly"],
    },
    {
        "name": "apple_music",
        "display_name": "Apple Music",
        "category": "Music",
        "website": "https://www.apple.com/apple-music",
        "keywords": ["apple music"],
        "countries": ["US", "GB", "CA", "AU", "DE", "FR", "NL", "IE"],
        "currencies": ["USD", "GBP", "CAD", "AUD", "EUR"],
        "typical_amounts": {"USD": 10.99, "GBP": 10.99, "EUR": 10.99},
        "billing_cycles": ["monthly"],
    },
    {
        "name": "icloud",
        "display_name": "iCloud+",
        "category": "Cloud Storage",
        "website": "https://www.icloud.com",
        "keywords": ["icloud", "icloud storage"],
        "countries": [],
        "currencies": [],
        "typical_amounts": {"USD": 2.99, "GBP": 2.99, "EUR": 2.99},
        "billing_cycles": ["monthly"],
    },
    {
        "name": "amazon_prime",
        "display_name": "Amazon Prime",
        "category": "Shopping",
        "website": "https://www.amazon.com/prime",
        "keywords": ["amazon prime", "prime video", "amazonprime"],
        "countries": ["US", "GB", "CA", "DE", "FR"],
        "currencies": ["USD", "GBP", "CAD", "EUR"],
        "typical_amounts": {"USD": 14.99, "GBP": 8.99, "EUR": 8.99},
        "billing_cycles": ["monthly", "yearly"],
    },
    {
        "name": "hulu",
        "display_name": "Hulu",
        "category": "Streaming",
        "website": "https://www.hulu.com",
        "keywords": ["hulu", "hulu.com"],
        "countries": ["US"],
        "currencies": ["USD"],
        "typical_amounts": {"USD": 7.99},
        "billing_cycles": ["monthly"],
    },
    {
        "name": "adobe_creative_cloud",
        "display_name": "Adobe Creative Cloud",
        "category": "Software",
        "website": "https://www.adobe.com",
        "keywords": ["adobe", "adobe creative cloud", "adobe systems"],
        "countries": [],
        "currencies": [],
        "typical_amounts": {"USD": 59.99, "GBP": 56.98, "EUR": 61.99},
        "billing_cycles": ["monthly", "yearly"],
    },
    {
        "name": "microsoft_365",
        "display_name": "Microsoft 365",
        "category": "Software",
        "website": "https://www.microsoft.com/microsoft-365",
        "keywords": ["microsoft 365", "office 365", "microsoft office"],
        "countries": [],
        "currencies": [],
        "typical_amounts": {"USD": 9.99, "GBP": 7.99, "EUR": 10.00},
        "billing_cycles": ["monthly", "yearly"],
    },
    {
        "name": "notion",
        "display_name": "Notion",
        "category": "Software",
        "website": "https://www.notion.so",
        "keywords": ["notion", "notion labs"],
        "countries": [],
        "currencies": [],
        "typical_amounts": {"USD": 10.00},
        "billing_cycles": ["monthly", "yearly"],
    },
    {
        "name": "dropbox",
        "display_name": "Dropbox",
        "category": "Cloud Storage",
        "website": "https://www.dropbox.com",
        "keywords": ["dropbox"],
        "countries": [],
        "currencies": [],
        "typical_amounts": {"USD": 11.99, "GBP": 9.99, "EUR": 11.99},
        "billing_cycles": ["monthly", "yearly"],
    },
    {
        "name": "chatgpt_plus",
        "display_name": "ChatGPT Plus",
        "category": "Software",
        "website": "https://chat.openai.com",
        "keywords": ["openai", "chatgpt", "chatgpt subscription"],
        "countries": [],
        "currencies": [],
        "typical_amounts": {"USD": 20.00, "GBP": 20.00, "EUR": 20.00},
        "billing_cycles": ["monthly"],
    },
    {
        "name": "planet_fitness",
        "display_name": "Planet Fitness",
        "category": "Fitness",
        "website": "https://www.planetfitness.com",
        "keywords": ["planet fitness", "planetfitness", "pf club"],
        "countries": ["US", "CA"],
        "currencies": ["USD", "CAD"],
        "typical_amounts": {"USD": 15.00},
        "billing_cycles": ["monthly", "yearly"],
    },
    {
        "name": "nyt",
        "display_name": "The New York Times",
        "category": "News",
        "website": "https://www.nytimes.com",
        "keywords": ["new york times", "nytimes", "nyt"],
        "countries": [],
        "currencies": ["USD"],
        "typical_amounts": {"USD": 17.00},
        "billing_cycles": ["monthly", "yearly"],
    },
    {
        "name": "xbox_game_pass",
        "display_name": "Xbox Game Pass",
        "category": "Gaming",
        "website": "https://www.xbox.com/xbox-game-pass",
        "keywords": ["xbox game pass", "xbox", "game pass"],
        "countries": [],
        "currencies": [],
        "typical_amounts": {"USD": 16.99, "GBP": 12.99, "EUR": 14.99},
        "billing_cycles": ["monthly"],
    },
    {
        "name": "playstation_plus",
        "display_name": "PlayStation Plus",
        "category": "Gaming",
        "website": "https://www.playstation.com",
        "keywords": ["playstation plus", "playstation network", "psn"],
        "countries": [],
        "currencies": [],
        "typical_amounts": {"USD": 9.99, "GBP": 6.99, "EUR": 8.99},
        "billing_cycles": ["monthly", "quarterly", "yearly"],
    },
]
