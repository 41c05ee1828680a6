"""
Campaign and coupon stores consumed by the engine
"""

import json
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from loguru import logger
from pydantic import ValidationError as PydanticValidationError

from .condition_evaluator import iter_condition_types
from .exceptions import InfrastructureError
from .models import Campaign, Coupon

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def is_campaign_live(campaign: Campaign, now: datetime) -> bool:
    return (
        campaign.is_active
        and campaign.status == 'active'
        and campaign.valid_from <= now <= campaign.valid_until
    )


class CampaignStore(ABC):
    """Read side for campaigns"""

    @abstractmethod
    def get_active_campaigns(self, now: datetime) -> List[Campaign]:
        """Campaigns that are active and valid at ``now``"""


class CouponStore(ABC):
    """Read/write side for coupons"""

    @abstractmethod
    def get_by_code(self, code: str) -> Optional[Coupon]:
        """Coupon for a code (case-insensitive), None when unknown"""

    @abstractmethod
    def insert_unique(self, coupon: Coupon) -> bool:
        """Insert a coupon; False when its code is already taken"""

    @abstractmethod
    def insert_batch(self, coupons: List[Coupon]) -> List[Coupon]:
        """Insert many coupons, returning those whose code was already taken"""

    @abstractmethod
    def coupons_for_campaign(self, campaign_id: str) -> List[Coupon]:
        """Coupons belonging to a campaign, oldest first"""

    @abstractmethod
    def assign_to_customer(self, code: str, customer_id: str) -> bool:
        """Bind an unassigned coupon to a customer; False when already bound"""

    @abstractmethod
    def deactivate(self, codes: List[str]) -> int:
        """Deactivate coupons by code, returning how many were active"""

    @abstractmethod
    def deactivate_expired(self, now: datetime) -> int:
        """Deactivate every active coupon whose validity ended before ``now``"""


class InMemoryCampaignStore(CampaignStore):
    """
    Holds a campaign snapshot and filters it the way the database query does:
    active status, inside the window, ordered by priority then creation
    """

    def __init__(self, campaigns: Optional[List[Campaign]] = None):
        self._campaigns: List[Campaign] = list(campaigns or [])

    def add(self, campaign: Campaign) -> None:
        self._campaigns.append(campaign)

    def get_active_campaigns(self, now: datetime) -> List[Campaign]:
        active = [c for c in self._campaigns if is_campaign_live(c, now)]
        active.sort(key=lambda c: (-c.priority, c.created_at or EPOCH))
        return active


class JsonCampaignStore(InMemoryCampaignStore):
    """
    Loads campaigns from JSON files under a directory (``**/*.json``).
    Each file holds one campaign object or a list of them.
    """

    def __init__(self, campaigns_dir: str = "campaigns"):
        super().__init__()
        self.campaigns_dir = Path(campaigns_dir)
        self._loaded = False

    def load_all_campaigns(self) -> List[Campaign]:
        """
        Load every campaign file; invalid files are logged and skipped

        Returns:
            List of Campaign objects
        """
        if not self.campaigns_dir.exists():
            logger.warning(f"Campaigns directory {self.campaigns_dir} does not exist")
            return []

        campaigns = []
        try:
            json_files = sorted(self.campaigns_dir.glob("**/*.json"))
            logger.info(f"Found {len(json_files)} campaign files")
        except OSError as e:
            raise InfrastructureError(f"Failed to scan campaigns directory: {str(e)}")

        for json_file in json_files:
            try:
                file_campaigns = self._load_campaign_file(json_file)
                campaigns.extend(file_campaigns)
                logger.debug(f"Loaded {len(file_campaigns)} campaigns from {json_file.name}")
            except (OSError, json.JSONDecodeError, PydanticValidationError) as e:
                logger.error(f"Failed to load campaign from {json_file}: {str(e)}")
                continue

        logger.info(f"Successfully loaded {len(campaigns)} campaigns")
        return campaigns

    def reload(self) -> None:
        self._campaigns = self.load_all_campaigns()
        self._loaded = True

    def get_active_campaigns(self, now: datetime) -> List[Campaign]:
        if not self._loaded:
            self.reload()
        return super().get_active_campaigns(now)

    def _load_campaign_file(self, json_file: Path) -> List[Campaign]:
        with open(json_file, 'r', encoding='utf-8') as f:
            data = json.load(f)

        records = data if isinstance(data, list) else [data]
        campaigns = [Campaign.model_validate(record) for record in records]
        for campaign in campaigns:
            logger.trace(
                f"Campaign {campaign.id} uses conditions {sorted(iter_condition_types(campaign.rules))}"
            )
        return campaigns


class InMemoryCouponStore(CouponStore):
    """Coupon store whose code index acts as the uniqueness constraint"""

    def __init__(self, coupons: Optional[List[Coupon]] = None):
        self._lock = threading.Lock()
        self._coupons: Dict[str, Coupon] = {}
        for coupon in coupons or []:
            self._coupons[coupon.code] = coupon

    def get_by_code(self, code: str) -> Optional[Coupon]:
        with self._lock:
            return self._coupons.get(code.strip().upper())

    def insert_unique(self, coupon: Coupon) -> bool:
        with self._lock:
            if coupon.code in self._coupons:
                return False
            self._coupons[coupon.code] = coupon
            return True

    def insert_batch(self, coupons: List[Coupon]) -> List[Coupon]:
        rejected = []
        with self._lock:
            for coupon in coupons:
                if coupon.code in self._coupons:
                    rejected.append(coupon)
                else:
                    self._coupons[coupon.code] = coupon
        return rejected

    def coupons_for_campaign(self, campaign_id: str) -> List[Coupon]:
        with self._lock:
            coupons = [c for c in self._coupons.values() if c.campaign_id == campaign_id]
        return sorted(coupons, key=lambda c: (c.created_at or EPOCH, c.code))

    def assign_to_customer(self, code: str, customer_id: str) -> bool:
        with self._lock:
            coupon = self._coupons.get(code.strip().upper())
            if coupon is None or coupon.customer_id is not None:
                return False
            self._coupons[coupon.code] = coupon.model_copy(update={'customer_id': customer_id})
            return True

    def deactivate(self, codes: List[str]) -> int:
        wanted = {code.strip().upper() for code in codes}
        with self._lock:
            return self._deactivate_where(lambda c: c.code in wanted)

    def deactivate_expired(self, now: datetime) -> int:
        with self._lock:
            return self._deactivate_where(lambda c: c.valid_until < now)

    def all_coupons(self) -> List[Coupon]:
        with self._lock:
            return list(self._coupons.values())

    def _deactivate_where(self, predicate) -> int:
        # Caller holds the lock; stored coupons are replaced, never mutated
        matched = [c for c in self._coupons.values() if c.is_active and predicate(c)]
        for coupon in matched:
            self._coupons[coupon.code] = coupon.model_copy(update={'is_active': False})
        return len(matched)
