"""
Channel attribution classifier.

Assigns every donation to exactly one marketing channel using a fixed
precedence of signals. Classification is pure and total: no clock, no
randomness and no I/O, and every input (including an empty one) yields
exactly one Attribution. Refunds are never classified.

Precedence:
    1. Explicit platform, or Meta campaign/creative/ad ids
    2. Referral code (explicit map or prefix rule), or source campaign
    3. Click identifier
    4. Contribution form naming an SMS vendor or an email appeal
    5. Any other non-empty referral code -> other
    6. Nothing -> unattributed
"""
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from finrollup.config import AttributionConfig, config
from finrollup.models import (
    AttributionMethod,
    AttributionSignals,
    Channel,
    ConfidenceLevel,
    Transaction,
)


# Substrings that name a platform, checked in order
_PLATFORM_WORDS: Tuple[Tuple[Channel, Tuple[str, ...]], ...] = (
    (Channel.META, ("meta", "facebook", "instagram")),
    (Channel.SMS, ("sms", "text", "txt")),
    (Channel.OTHER, ("email", "newsletter")),
)


@dataclass(frozen=True)
class Attribution:
    """Result of classifying one donation."""
    channel: Channel
    method: AttributionMethod
    confidence: ConfidenceLevel
    score: float

    @property
    def is_deterministic(self) -> bool:
        return self.confidence == ConfidenceLevel.DETERMINISTIC


UNATTRIBUTED = Attribution(
    Channel.UNATTRIBUTED, AttributionMethod.UNATTRIBUTED, ConfidenceLevel.NONE, 0.0
)


@dataclass(frozen=True)
class AttributionRecord:
    """A donation paired with its attribution."""
    transaction: Transaction
    attribution: Attribution

    @property
    def channel(self) -> Channel:
        return self.attribution.channel


@dataclass(frozen=True)
class AttributionRules:
    """Prefix rules, contribution form markers and explicit refcode mappings."""
    refcode_prefixes: Tuple[Tuple[Channel, Tuple[str, ...]], ...]
    sms_form_markers: Tuple[str, ...] = ("sms",)
    email_form_markers: Tuple[str, ...] = ("email",)
    email_form_prefixes: Tuple[str, ...] = ("em_",)
    refcode_platforms: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_config(cls, settings: AttributionConfig) -> "AttributionRules":
        return cls(
            refcode_prefixes=tuple(
                (Channel(channel), tuple(p.lower() for p in prefixes))
                for channel, prefixes in settings.refcode_prefixes
            ),
            sms_form_markers=tuple(m.lower() for m in settings.sms_form_markers),
            email_form_markers=tuple(m.lower() for m in settings.email_form_markers),
            email_form_prefixes=tuple(p.lower() for p in settings.email_form_prefixes),
            refcode_platforms=dict(settings.refcode_platforms),
        )


DEFAULT_RULES = AttributionRules.from_config(config.attribution)


# ═══════════════════════════════════════════════════════════════════════════════
# RESOLUTION HELPERS
# ═══════════════════════════════════════════════════════════════════════════════

def platform_channel(value: Optional[str]) -> Optional[Channel]:
    """Map a platform name ('facebook', 'Meta Ads', 'sms_last_touch') to a channel."""
    if not value:
        return None
    text = value.lower()
    for channel, words in _PLATFORM_WORDS:
        if any(word in text for word in words):
            return channel
    return None


def refcode_channel(refcode: Optional[str], rules: AttributionRules) -> Optional[Channel]:
    """Resolve a referral code through the explicit map, then prefix rules."""
    if not refcode:
        return None
    code = refcode.lower()

    mapped = rules.refcode_platforms.get(code)
    if mapped:
        return platform_channel(mapped)

    for channel, prefixes in rules.refcode_prefixes:
        if code.startswith(prefixes):
            return channel
    return None


# ═══════════════════════════════════════════════════════════════════════════════
# CLASSIFIER
# ═══════════════════════════════════════════════════════════════════════════════

def classify(signals: Optional[AttributionSignals], rules: Optional[AttributionRules] = None) -> Attribution:
    """
    Classify a donation's attribution signals into a channel.

    Args:
        signals: Signals carried by (or joined onto) the donation
        rules: Prefix/mapping rules (default: from config)

    Returns:
        Attribution; never raises
    """
    if signals is None:
        return UNATTRIBUTED
    rules = rules or DEFAULT_RULES

    # 1. Explicit platform or campaign mapping
    channel = platform_channel(signals.platform)
    if channel is not None:
        return Attribution(channel, AttributionMethod.PLATFORM_MAPPING, ConfidenceLevel.DETERMINISTIC, 1.0)

    if signals.has_campaign_mapping:
        return Attribution(Channel.META, AttributionMethod.CAMPAIGN_MAPPING, ConfidenceLevel.DETERMINISTIC, 1.0)

    # 2. Referral code or source campaign
    if signals.refcode and signals.refcode.lower() in rules.refcode_platforms:
        channel = refcode_channel(signals.refcode, rules)
        if channel is not None:
            return Attribution(channel, AttributionMethod.REFCODE, ConfidenceLevel.DETERMINISTIC, 1.0)

    channel = refcode_channel(signals.refcode, rules)
    if channel is not None:
        return Attribution(channel, AttributionMethod.REFCODE, ConfidenceLevel.HIGH, 0.9)

    channel = platform_channel(signals.source_campaign)
    if channel is not None:
        return Attribution(channel, AttributionMethod.REFCODE, ConfidenceLevel.HIGH, 0.85)

    # 3. Click identifiers
    if signals.fbclid:
        return Attribution(Channel.META, AttributionMethod.CLICK_ID, ConfidenceLevel.HIGH, 0.9)
    if signals.click_id:
        return Attribution(Channel.META, AttributionMethod.CLICK_ID, ConfidenceLevel.HIGH, 0.8)

    # 4. Contribution form heuristic
    form = (signals.contribution_form or "").lower()
    if form and any(marker in form for marker in rules.sms_form_markers):
        return Attribution(Channel.SMS, AttributionMethod.CONTRIBUTION_FORM, ConfidenceLevel.MEDIUM, 0.7)
    if form and (form.startswith(rules.email_form_prefixes)
                 or any(marker in form for marker in rules.email_form_markers)):
        return Attribution(Channel.OTHER, AttributionMethod.CONTRIBUTION_FORM, ConfidenceLevel.MEDIUM, 0.7)

    # 5. Unresolved referral code still counts as a referral
    if signals.refcode:
        return Attribution(Channel.OTHER, AttributionMethod.REFCODE, ConfidenceLevel.MEDIUM, 0.6)

    return UNATTRIBUTED


def classify_transactions(
    transactions: Iterable[Transaction],
    rules: Optional[AttributionRules] = None,
) -> List[AttributionRecord]:
    """Classify donations; refunds and cancellations are skipped."""
    return [
        AttributionRecord(txn, classify(txn.signals, rules))
        for txn in transactions
        if txn.is_donation
    ]


def is_attributed(attribution: Attribution) -> bool:
    return attribution.channel != Channel.UNATTRIBUTED


def channel_label(channel: Channel) -> str:
    return Channel(channel).label


# ═══════════════════════════════════════════════════════════════════════════════
# AGGREGATION
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class ChannelTotals:
    """Running totals for one channel."""
    count: int = 0
    raised: float = 0.0
    net: float = 0.0
    donors: Set[str] = field(default_factory=set)


def aggregate_by_channel(records: Iterable[AttributionRecord]) -> Dict[Channel, ChannelTotals]:
    """
    Sum donations per channel.

    Every channel appears in the result, including ones with no donations,
    so unattributed revenue stays visible.
    """
    totals: Dict[Channel, ChannelTotals] = {channel: ChannelTotals() for channel in Channel}
    for record in records:
        bucket = totals[record.channel]
        bucket.count += 1
        bucket.raised += record.transaction.amount
        bucket.net += record.transaction.net_amount
        if record.transaction.donor_id:
            bucket.donors.add(record.transaction.donor_id)
    return totals


def count_by_channel(records: Iterable[AttributionRecord]) -> Dict[Channel, int]:
    counts: Dict[Channel, int] = {channel: 0 for channel in Channel}
    for record in records:
        counts[record.channel] += 1
    return counts


@dataclass
class AttributionQuality:
    """Summary of how well donations in a period are attributed."""
    total: int = 0
    attributed: int = 0
    deterministic: int = 0
    by_channel: Dict[str, int] = field(default_factory=dict)
    by_confidence: Dict[str, int] = field(default_factory=dict)
    average_score: float = 0.0

    @property
    def attributed_percentage(self) -> float:
        return self.attributed / self.total * 100 if self.total else 0.0

    @property
    def deterministic_percentage(self) -> float:
        return self.deterministic / self.total * 100 if self.total else 0.0

    def channel_percentages(self) -> Dict[str, float]:
        if not self.total:
            return {name: 0.0 for name in self.by_channel}
        return {name: count / self.total * 100 for name, count in self.by_channel.items()}


def attribution_quality(records: Sequence[AttributionRecord]) -> AttributionQuality:
    """Counts by channel and confidence, with the average score."""
    by_channel: Dict[str, int] = {channel.value: 0 for channel in Channel}
    by_confidence: Dict[str, int] = defaultdict(int)
    score_total = 0.0
    attributed = deterministic = 0

    for record in records:
        attribution = record.attribution
        by_channel[attribution.channel.value] += 1
        by_confidence[attribution.confidence.value] += 1
        score_total += attribution.score
        if is_attributed(attribution):
            attributed += 1
        if attribution.is_deterministic:
            deterministic += 1

    total = len(records)
    return AttributionQuality(
        total=total,
        attributed=attributed,
        deterministic=deterministic,
        by_channel=by_channel,
        by_confidence=dict(by_confidence),
        average_score=score_total / total if total else 0.0,
    )
