"""
Cost optimizer

Chooses which optional processing features a tenant tier may run, estimates
the cost of a prospective media operation before any billable work starts,
reuses results for content that was already processed, and amortizes
per-call overhead by batching.
"""

import asyncio
import hashlib
import logging
import math
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_CEILING
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, TypeVar

from .models import CostEvent, MoneyLike, from_cents, to_money
from .price_table import PriceTable

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


class SubscriptionTier(str, Enum):
    FREE = "free"
    PREMIUM = "premium"
    ULTIMATE = "ultimate"

    @property
    def rank(self) -> int:
        return TIER_ORDER.index(self)

    @classmethod
    def parse(cls, value: Any) -> "SubscriptionTier":
        """Unknown or missing tiers fall back to FREE"""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            logger.warning(f"Unknown subscription tier {value!r}, using free plan")
            return cls.FREE


TIER_ORDER = [SubscriptionTier.FREE, SubscriptionTier.PREMIUM, SubscriptionTier.ULTIMATE]


class ProcessingFeature(str, Enum):
    LABEL_DETECTION = "label_detection"
    EMBEDDING_GENERATION = "embedding_generation"
    TEXT_DETECTION = "text_detection"
    TRANSCRIPTION = "transcription"
    SENTIMENT_ANALYSIS = "sentiment_analysis"
    FACE_DETECTION = "face_detection"
    CONTENT_MODERATION = "content_moderation"
    ENTITY_EXTRACTION = "entity_extraction"
    KEY_PHRASE_EXTRACTION = "key_phrase_extraction"
    VIDEO_SEGMENT_ANALYSIS = "video_segment_analysis"


class MediaType(str, Enum):
    IMAGE = "image"
    VIDEO = "video"


# Lowest tier each feature is approved for
FEATURE_MIN_TIER: Dict[ProcessingFeature, SubscriptionTier] = {
    ProcessingFeature.LABEL_DETECTION: SubscriptionTier.FREE,
    ProcessingFeature.EMBEDDING_GENERATION: SubscriptionTier.FREE,
    ProcessingFeature.TEXT_DETECTION: SubscriptionTier.PREMIUM,
    ProcessingFeature.TRANSCRIPTION: SubscriptionTier.PREMIUM,
    ProcessingFeature.SENTIMENT_ANALYSIS: SubscriptionTier.PREMIUM,
    ProcessingFeature.FACE_DETECTION: SubscriptionTier.ULTIMATE,
    ProcessingFeature.CONTENT_MODERATION: SubscriptionTier.ULTIMATE,
    ProcessingFeature.ENTITY_EXTRACTION: SubscriptionTier.ULTIMATE,
    ProcessingFeature.KEY_PHRASE_EXTRACTION: SubscriptionTier.ULTIMATE,
    ProcessingFeature.VIDEO_SEGMENT_ANALYSIS: SubscriptionTier.ULTIMATE,
}


@dataclass(frozen=True)
class ProcessingPlan:
    """Ordered optional features and processing-time ceiling for a tier"""
    tier: SubscriptionTier
    features: Tuple[ProcessingFeature, ...]
    max_processing_seconds: int

    def allows(self, feature: ProcessingFeature) -> bool:
        return feature in self.features

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tier": self.tier.value,
            "features": [f.value for f in self.features],
            "max_processing_seconds": self.max_processing_seconds,
        }


PROCESSING_PLANS: Dict[SubscriptionTier, ProcessingPlan] = {
    SubscriptionTier.FREE: ProcessingPlan(
        tier=SubscriptionTier.FREE,
        features=(
            ProcessingFeature.LABEL_DETECTION,
            ProcessingFeature.EMBEDDING_GENERATION,
        ),
        max_processing_seconds=60,
    ),
    SubscriptionTier.PREMIUM: ProcessingPlan(
        tier=SubscriptionTier.PREMIUM,
        features=(
            ProcessingFeature.LABEL_DETECTION,
            ProcessingFeature.EMBEDDING_GENERATION,
            ProcessingFeature.TEXT_DETECTION,
            ProcessingFeature.TRANSCRIPTION,
            ProcessingFeature.SENTIMENT_ANALYSIS,
        ),
        max_processing_seconds=300,
    ),
    SubscriptionTier.ULTIMATE: ProcessingPlan(
        tier=SubscriptionTier.ULTIMATE,
        features=(
            ProcessingFeature.LABEL_DETECTION,
            ProcessingFeature.EMBEDDING_GENERATION,
            ProcessingFeature.TEXT_DETECTION,
            ProcessingFeature.TRANSCRIPTION,
            ProcessingFeature.SENTIMENT_ANALYSIS,
            ProcessingFeature.FACE_DETECTION,
            ProcessingFeature.CONTENT_MODERATION,
            ProcessingFeature.ENTITY_EXTRACTION,
            ProcessingFeature.KEY_PHRASE_EXTRACTION,
            ProcessingFeature.VIDEO_SEGMENT_ANALYSIS,
        ),
        max_processing_seconds=900,
    ),
}


def select_plan(tier: Any) -> ProcessingPlan:
    """Static plan lookup; unknown tiers get the free plan"""
    return PROCESSING_PLANS[SubscriptionTier.parse(tier)]


# Feature -> (service, operation) per media type; units are derived in estimate_cost
FEATURE_OPERATIONS: Dict[MediaType, Dict[ProcessingFeature, Tuple[str, str]]] = {
    MediaType.IMAGE: {
        ProcessingFeature.LABEL_DETECTION: ("rekognition", "detect_labels"),
        ProcessingFeature.TEXT_DETECTION: ("rekognition", "detect_text"),
        ProcessingFeature.FACE_DETECTION: ("rekognition", "detect_faces"),
        ProcessingFeature.CONTENT_MODERATION: ("rekognition", "detect_moderation_labels"),
        ProcessingFeature.SENTIMENT_ANALYSIS: ("comprehend", "detect_sentiment"),
        ProcessingFeature.ENTITY_EXTRACTION: ("comprehend", "detect_entities"),
        ProcessingFeature.KEY_PHRASE_EXTRACTION: ("comprehend", "detect_key_phrases"),
        ProcessingFeature.EMBEDDING_GENERATION: ("openai", "embedding"),
    },
    MediaType.VIDEO: {
        ProcessingFeature.LABEL_DETECTION: ("rekognition", "video_label_detection"),
        ProcessingFeature.FACE_DETECTION: ("rekognition", "video_face_detection"),
        ProcessingFeature.CONTENT_MODERATION: ("rekognition", "video_content_moderation"),
        ProcessingFeature.VIDEO_SEGMENT_ANALYSIS: ("rekognition", "video_segment_detection"),
        ProcessingFeature.TRANSCRIPTION: ("transcribe", "transcription"),
        ProcessingFeature.SENTIMENT_ANALYSIS: ("comprehend", "detect_sentiment"),
        ProcessingFeature.ENTITY_EXTRACTION: ("comprehend", "detect_entities"),
        ProcessingFeature.KEY_PHRASE_EXTRACTION: ("comprehend", "detect_key_phrases"),
        ProcessingFeature.EMBEDDING_GENERATION: ("openai", "embedding"),
    },
}

# Conservative sizing assumptions (estimates should err high)
CONSERVATIVE_VIDEO_BITRATE_BPS = 500_000
ASSUMED_IMAGE_TEXT_CHARS = 2_000
TRANSCRIPT_CHARS_PER_MINUTE = 1_000
CHARS_PER_TOKEN = 4
EMBEDDING_BASE_TOKENS = 256
COMPREHEND_MIN_CHARS = 300
BYTES_PER_GB = 1_000_000_000


@dataclass
class CostLineItem:
    service: str
    operation: str
    units: Decimal
    amount: Decimal
    feature: Optional[str] = None


@dataclass
class CostEstimate:
    """Pre-flight cost estimate for one media operation"""
    media_type: str
    size_bytes: int
    total: Decimal
    subtotal: Decimal
    safety_margin: Decimal
    line_items: List[CostLineItem] = field(default_factory=list)
    skipped_features: List[str] = field(default_factory=list)

    def as_events(self, tenant_id: str) -> List[CostEvent]:
        """Provisional events for the line items; never persisted"""
        return [
            CostEvent.create(
                tenant_id=tenant_id,
                service=item.service,
                operation=item.operation,
                amount=item.amount,
                units=item.units,
                metadata={"feature": item.feature, "media_type": self.media_type},
                provisional=True
            )
            for item in self.line_items
        ]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "media_type": self.media_type,
            "size_bytes": self.size_bytes,
            "total": str(self.total),
            "subtotal": str(self.subtotal),
            "safety_margin": str(self.safety_margin),
            "line_items": [
                {
                    "service": item.service,
                    "operation": item.operation,
                    "units": str(item.units),
                    "amount": str(item.amount),
                    "feature": item.feature,
                }
                for item in self.line_items
            ],
            "skipped_features": list(self.skipped_features),
        }


@dataclass
class DedupHit:
    """Previously processed content that matches a fingerprint (a hint, not a guarantee)"""
    content_hash: str
    result: Optional[Dict[str, Any]]
    exact: bool
    similarity: float
    hamming_distance: int = 0
    cost_avoided: Decimal = Decimal("0")


@dataclass
class BatchResult:
    """Outcome and advisory savings of a batched run"""
    item_count: int
    batch_size: int
    batch_count: int
    batch_results: List[Optional[Any]] = field(default_factory=list)
    errors: List[Tuple[int, str]] = field(default_factory=list)
    per_item_cost_total: Decimal = Decimal("0")
    batched_cost_total: Decimal = Decimal("0")

    @property
    def cost_saved(self) -> Decimal:
        return to_money(self.per_item_cost_total - self.batched_cost_total)

    @property
    def results(self) -> List[Any]:
        """Flattened results of the batches that succeeded, in input order"""
        flattened: List[Any] = []
        for batch in self.batch_results:
            if batch is None:
                continue
            if isinstance(batch, (list, tuple)):
                flattened.extend(batch)
            else:
                flattened.append(batch)
        return flattened


@dataclass
class EfficiencyPolicy:
    """Scoring knobs for cost-efficiency reports"""
    base_score: int = 100
    high_total_cost_threshold: Decimal = Decimal("100")
    high_total_cost_penalty: int = 20
    high_average_cost_threshold: Decimal = Decimal("0.10")
    high_average_cost_penalty: int = 15
    low_cache_hit_rate_threshold: float = 0.2
    low_cache_hit_rate_penalty: int = 10
    high_cache_hit_rate_threshold: float = 0.5
    high_cache_hit_rate_bonus: int = 5


@dataclass
class EfficiencyReport:
    score: int
    total_cost: Decimal
    files_processed: int
    average_cost_per_file: Decimal
    cache_hit_rate: float
    recommendations: List[str] = field(default_factory=list)


def compute_content_hash(data: bytes) -> str:
    """Exact-match fingerprint for content"""
    return hashlib.sha256(data).hexdigest()


def hamming_distance(left: str, right: str) -> int:
    """Bit distance between two hex-encoded perceptual hashes"""
    return bin(int(left, 16) ^ int(right, 16)).count("1")


def _ceil_units(value: Decimal) -> Decimal:
    return value.to_integral_value(rounding=ROUND_CEILING)


class CostOptimizer:
    """Plan selection, cost estimation, deduplication and batching"""

    def __init__(
        self,
        price_table: Optional[PriceTable] = None,
        content_store: Optional[Any] = None,
        safety_margin: MoneyLike = Decimal("1.2"),
        max_hamming_distance: int = 6,
        dedup_lookback_limit: int = 500,
        max_concurrency: int = 4
    ):
        self.price_table = price_table or PriceTable()
        self.content_store = content_store
        self.safety_margin = Decimal(str(safety_margin))
        self.max_hamming_distance = max_hamming_distance
        self.dedup_lookback_limit = dedup_lookback_limit
        self.max_concurrency = max_concurrency

        self.stats = {
            "estimates": 0,
            "dedup_lookups": 0,
            "dedup_exact_hits": 0,
            "dedup_similar_hits": 0,
            "batches_processed": 0,
        }

        if self.safety_margin < 1:
            logger.warning(f"Estimate safety margin {self.safety_margin} < 1 makes estimates optimistic")

    def select_plan(self, tier: Any) -> ProcessingPlan:
        return select_plan(tier)

    def estimate_cost(
        self,
        media_type: Any,
        size_bytes: int,
        features: Optional[Iterable[Any]] = None,
        duration_seconds: Optional[float] = None,
        text_length: Optional[int] = None
    ) -> CostEstimate:
        """
        Estimate the cost of processing one media file

        Args:
            media_type: "image" or "video"
            size_bytes: File size, drives storage cost and, for video without a
                known duration, the inferred duration
            features: Requested features; defaults to label detection + embeddings
            duration_seconds: Known video duration
            text_length: Known length of extracted text, otherwise assumed

        Returns:
            CostEstimate whose total includes the safety margin
        """
        self.stats["estimates"] += 1
        size_bytes = max(int(size_bytes or 0), 0)

        try:
            media = MediaType(str(getattr(media_type, "value", media_type)).lower())
        except ValueError:
            logger.error(f"Cannot estimate unsupported media type {media_type!r}, treating as zero cost")
            return CostEstimate(
                media_type=str(media_type),
                size_bytes=size_bytes,
                total=to_money(0),
                subtotal=to_money(0),
                safety_margin=self.safety_margin
            )

        requested = list(features) if features is not None else [
            ProcessingFeature.LABEL_DETECTION,
            ProcessingFeature.EMBEDDING_GENERATION,
        ]

        minutes = self._billable_minutes(media, size_bytes, duration_seconds)
        text_chars = self._text_chars(media, minutes, text_length)

        line_items: List[CostLineItem] = []
        skipped: List[str] = []

        # Storage applies to every upload
        line_items.append(self._line_item("s3", "put_object", Decimal(1)))
        if size_bytes:
            line_items.append(self._line_item("s3", "storage", Decimal(size_bytes) / BYTES_PER_GB))

        for raw_feature in requested:
            try:
                feature = ProcessingFeature(getattr(raw_feature, "value", raw_feature))
            except ValueError:
                logger.error(f"Unknown processing feature {raw_feature!r}, treating as zero cost")
                skipped.append(str(raw_feature))
                continue

            mapping = FEATURE_OPERATIONS[media].get(feature)
            if mapping is None:
                logger.debug(f"Feature {feature.value} does not apply to {media.value}")
                skipped.append(feature.value)
                continue

            service, operation = mapping
            units = self._units_for(media, service, minutes, text_chars)
            line_items.append(self._line_item(service, operation, units, feature.value))

        subtotal = to_money(sum((item.amount for item in line_items), Decimal("0")))
        total = to_money(subtotal * self.safety_margin)

        logger.debug(
            f"Estimated {media.value} ({size_bytes} bytes, {len(line_items)} items): "
            f"${subtotal} -> ${total} with margin"
        )

        return CostEstimate(
            media_type=media.value,
            size_bytes=size_bytes,
            total=total,
            subtotal=subtotal,
            safety_margin=self.safety_margin,
            line_items=line_items,
            skipped_features=skipped
        )

    def estimate_plan_cost(
        self,
        tier: Any,
        media_type: Any,
        size_bytes: int,
        duration_seconds: Optional[float] = None
    ) -> CostEstimate:
        """Estimate using every feature the tier's plan enables"""
        plan = self.select_plan(tier)
        return self.estimate_cost(media_type, size_bytes, plan.features, duration_seconds)

    def _line_item(self, service: str, operation: str, units: Decimal, feature: Optional[str] = None) -> CostLineItem:
        return CostLineItem(
            service=service,
            operation=operation,
            units=units,
            amount=self.price_table.cost_for(service, operation, units),
            feature=feature
        )

    @staticmethod
    def _billable_minutes(media: MediaType, size_bytes: int, duration_seconds: Optional[float]) -> Decimal:
        if media != MediaType.VIDEO:
            return Decimal(0)
        if duration_seconds is not None and duration_seconds > 0:
            seconds = Decimal(str(duration_seconds))
        else:
            # Low assumed bitrate means a longer inferred duration
            seconds = Decimal(size_bytes * 8) / CONSERVATIVE_VIDEO_BITRATE_BPS
        return max(Decimal(1), _ceil_units(seconds / 60))

    @staticmethod
    def _text_chars(media: MediaType, minutes: Decimal, text_length: Optional[int]) -> int:
        if text_length is not None and text_length > 0:
            return int(text_length)
        if media == MediaType.VIDEO:
            return int(minutes) * TRANSCRIPT_CHARS_PER_MINUTE
        return ASSUMED_IMAGE_TEXT_CHARS

    @staticmethod
    def _units_for(media: MediaType, service: str, minutes: Decimal, text_chars: int) -> Decimal:
        if service == "comprehend":
            billed_chars = max(text_chars, COMPREHEND_MIN_CHARS)
            return _ceil_units(Decimal(billed_chars) / 100) * 100
        if service == "openai":
            return Decimal(math.ceil(text_chars / CHARS_PER_TOKEN) + EMBEDDING_BASE_TOKENS)
        if media == MediaType.VIDEO:
            return minutes
        return Decimal(1)

    async def find_duplicate(
        self,
        tenant_id: str,
        content_hash: str,
        perceptual_hash: Optional[str] = None
    ) -> Optional[DedupHit]:
        """
        Look for already-processed content: exact hash first, then near-identical

        Near-identical matching compares perceptual hashes by Hamming distance
        and can return false positives.
        """
        if self.content_store is None:
            return None

        self.stats["dedup_lookups"] += 1
        try:
            exact = await self.content_store.find_processed_content(tenant_id, content_hash)
            if exact is not None:
                self.stats["dedup_exact_hits"] += 1
                logger.info(f"Exact duplicate content for tenant {tenant_id}: {content_hash[:12]}")
                return DedupHit(
                    content_hash=exact.content_hash,
                    result=exact.result_json,
                    exact=True,
                    similarity=1.0,
                    cost_avoided=from_cents(exact.cost_cents) if exact.cost_cents is not None else Decimal("0")
                )

            if not perceptual_hash:
                return None

            best = None
            best_distance = self.max_hamming_distance + 1
            for candidate in await self.content_store.list_recent_fingerprints(
                tenant_id, self.dedup_lookback_limit
            ):
                try:
                    distance = hamming_distance(perceptual_hash, candidate.perceptual_hash)
                except (TypeError, ValueError):
                    continue
                if distance < best_distance:
                    best, best_distance = candidate, distance

            if best is None:
                return None

            self.stats["dedup_similar_hits"] += 1
            bits = len(perceptual_hash) * 4
            logger.info(
                f"Near-identical content for tenant {tenant_id}: distance {best_distance} "
                f"to {best.content_hash[:12]}"
            )
            return DedupHit(
                content_hash=best.content_hash,
                result=best.result_json,
                exact=False,
                similarity=round(1 - best_distance / bits, 4),
                hamming_distance=best_distance,
                cost_avoided=from_cents(best.cost_cents) if best.cost_cents is not None else Decimal("0")
            )

        except Exception as e:
            logger.error(f"Deduplication lookup failed for tenant {tenant_id}: {e}")
            return None

    async def remember_processed(
        self,
        tenant_id: str,
        content_hash: str,
        result: Optional[Dict[str, Any]] = None,
        perceptual_hash: Optional[str] = None,
        media_type: Optional[str] = None,
        cost: Optional[MoneyLike] = None
    ) -> bool:
        """Store a fingerprint so later identical uploads can reuse the result"""
        if self.content_store is None:
            return False

        try:
            await self.content_store.remember_processed_content(
                tenant_id,
                content_hash,
                result=result,
                perceptual_hash=perceptual_hash,
                media_type=media_type,
                cost=to_money(cost) if cost is not None else None
            )
            return True

        except Exception as e:
            logger.error(f"Failed to remember processed content for tenant {tenant_id}: {e}")
            return False

    async def process_in_batches(
        self,
        items: Sequence[T],
        batch_size: int,
        processor: Callable[[List[T]], Awaitable[R]],
        max_concurrency: Optional[int] = None,
        per_call_cost: MoneyLike = 0,
        per_item_cost: MoneyLike = 0
    ) -> BatchResult:
        """
        Run `processor` over ceil(N/B) batches with a concurrency cap

        Savings are advisory: N per-item invocations versus one call per batch.
        A failing batch is recorded in `errors` and does not stop the others.
        """
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")

        items = list(items)
        batches = [items[i:i + batch_size] for i in range(0, len(items), batch_size)]
        semaphore = asyncio.Semaphore(max(1, max_concurrency or self.max_concurrency))

        result = BatchResult(
            item_count=len(items),
            batch_size=batch_size,
            batch_count=len(batches),
            batch_results=[None] * len(batches),
            per_item_cost_total=to_money(to_money(per_item_cost) * len(items)),
            batched_cost_total=to_money(to_money(per_call_cost) * len(batches)),
        )

        async def run(index: int, batch: List[T]):
            async with semaphore:
                try:
                    result.batch_results[index] = await processor(batch)
                except Exception as e:
                    logger.error(f"Batch {index + 1}/{len(batches)} failed: {e}")
                    result.errors.append((index, str(e)))

        await asyncio.gather(*(run(i, batch) for i, batch in enumerate(batches)))
        self.stats["batches_processed"] += len(batches)

        logger.info(
            f"Processed {len(items)} items in {len(batches)} batches, "
            f"estimated savings ${result.cost_saved}"
        )
        return result

    def score_efficiency(
        self,
        total_cost: MoneyLike,
        files_processed: int,
        cache_hit_rate: float,
        policy: Optional[EfficiencyPolicy] = None
    ) -> EfficiencyReport:
        """Heuristic efficiency score; every constant comes from `policy`"""
        policy = policy or EfficiencyPolicy()
        total = to_money(total_cost)
        average = to_money(total / files_processed) if files_processed > 0 else to_money(0)

        score = policy.base_score
        recommendations: List[str] = []

        if total > policy.high_total_cost_threshold:
            score -= policy.high_total_cost_penalty
            recommendations.append("Review tier plans: total spend is high for the period")

        if average > policy.high_average_cost_threshold:
            score -= policy.high_average_cost_penalty
            recommendations.append("Batch requests or disable optional features to reduce cost per file")

        if cache_hit_rate < policy.low_cache_hit_rate_threshold:
            score -= policy.low_cache_hit_rate_penalty
            recommendations.append("Enable content deduplication to reuse prior results")
        elif cache_hit_rate >= policy.high_cache_hit_rate_threshold:
            score += policy.high_cache_hit_rate_bonus

        return EfficiencyReport(
            score=max(0, min(100, score)),
            total_cost=total,
            files_processed=files_processed,
            average_cost_per_file=average,
            cache_hit_rate=cache_hit_rate,
            recommendations=recommendations
        )
