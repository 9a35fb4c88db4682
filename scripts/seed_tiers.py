import logging

import yaml
from sqlalchemy import select

from config.settings import settings
from storage.database import get_session
from storage.models import SubscriptionTier

logger = logging.getLogger(__name__)


def load_tiers_config(path=None) -> list[dict]:
    """Load subscription tier definitions from the YAML config."""
    with open(path or settings.tiers_yaml_path, "r") as f:
        data = yaml.safe_load(f) or {}
    return data.get("tiers", [])


async def seed_tiers():
    """Insert subscription tiers from YAML config. Idempotent; existing tiers are left alone."""
    tiers = load_tiers_config()
    if not tiers:
        logger.warning("No tiers found in tiers.yaml")
        return

    async with get_session() as session:
        for t in tiers:
            result = await session.execute(
                select(SubscriptionTier).where(SubscriptionTier.id == t["id"])
            )
            if result.scalar_one_or_none():
                logger.debug(f"Tier already exists: {t['id']}")
                continue

            session.add(
                SubscriptionTier(
                    id=t["id"],
                    name=t["name"],
                    monthly_price_cents=t.get("monthly_price_cents", 0),
                    monthly_token_limit=t.get("monthly_token_limit"),
                    rate_limit_per_minute=t["rate_limit_per_minute"],
                    features=t.get("features", {}),
                )
            )
            logger.info(f"Added tier: {t['id']} ({t['name']})")

    logger.info(f"Tier seeding complete. {len(tiers)} tiers in config.")
