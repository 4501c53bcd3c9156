"""
Catalog of features that memberships grant or that can be bought as add-ons.

Membership types list feature ids in ``membership_types.features``; add-ons
carry their own price and, unless permanent, a duration.
"""
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class Feature:
    id: str
    name: str
    description: str
    is_addon: bool = False
    price_cents: Optional[int] = None
    currency: Optional[str] = None
    duration_days: Optional[int] = None  # None: permanent add-on

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


AVAILABLE_FEATURES: Dict[str, Feature] = {
    feature.id: feature
    for feature in (
        # Included in memberships
        Feature("streaming", "Streaming Access", "Access to stream all content"),
        Feature("download", "Download Access", "Ability to download content for offline use"),
        Feature("hd", "HD Quality", "Stream content in high definition"),
        Feature("4k", "4K Quality", "Stream content in ultra high definition"),
        Feature("ad_free", "Ad-Free Experience", "Remove all advertisements"),
        Feature("early_access", "Early Access", "Get early access to new content and features"),
        # Sold separately
        Feature(
            "family_sharing",
            "Family Sharing",
            "Share your subscription with up to 5 family members",
            is_addon=True,
            price_cents=499,
            currency="USD",
            duration_days=30,
        ),
        Feature(
            "exclusive_content",
            "Exclusive Content",
            "Access to exclusive premium content",
            is_addon=True,
            price_cents=299,
            currency="USD",
            duration_days=30,
        ),
        Feature(
            "lifetime_downloads",
            "Lifetime Downloads",
            "Permanent access to download all content",
            is_addon=True,
            price_cents=9900,
            currency="USD",
        ),
        Feature(
            "cloud_storage",
            "Cloud Storage",
            "Store your files in the cloud",
            is_addon=True,
            price_cents=199,
            currency="USD",
            duration_days=30,
        ),
        Feature(
            "priority_support",
            "Priority Support",
            "Get priority customer support",
            is_addon=True,
            price_cents=499,
            currency="USD",
            duration_days=30,
        ),
    )
}


def get_feature(feature_id: str) -> Optional[Feature]:
    return AVAILABLE_FEATURES.get(feature_id)


def addon_features() -> List[Feature]:
    return [feature for feature in AVAILABLE_FEATURES.values() if feature.is_addon]


def unknown_features(feature_ids: List[str]) -> List[str]:
    """Return the ids that are not in the catalog."""
    return [feature_id for feature_id in feature_ids if feature_id not in AVAILABLE_FEATURES]
