"""
Storage - Scan Store Repository.

============================================================
PURPOSE
============================================================
Durable keyed store used by the scan pipeline.

RESPONSIBILITIES:
- Scans: create, get, conditional update, query by tier/window
- Quotas: lazy creation, atomic compare-and-increment
- Consent, profiles, thresholds, webhooks, device tokens
- Threat location journal (append-only)

CRITICAL REQUIREMENTS:
- Quota increments are a single conditional UPDATE
- Scan updates are conditional on the expected prior state
- Every operation runs in its own short session

============================================================
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError

from scan_engine.clock import ClockProtocol, SystemClock
from scan_engine.types import (
    AccountProfile,
    ConsentRecord,
    DeviceToken,
    Location,
    MatchTier,
    QuotaRecord,
    Scan,
    ScanState,
    ThreatLocationEntry,
    ThreatLocationJournal,
    ThresholdConfig,
    ThresholdSource,
    WebhookSubscription,
)

from .database import Database
from .models import (
    AccountProfileModel,
    ConsentModel,
    DeviceTokenModel,
    QuotaModel,
    ScanModel,
    ServiceThresholdModel,
    ThreatLocationModel,
    WebhookSubscriptionModel,
)


logger = logging.getLogger(__name__)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo; every stored timestamp is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ============================================================
# SCAN STORE
# ============================================================

class ScanStore:
    """
    Repository for scan pipeline persistence.
    """

    def __init__(self, db: Database, clock: Optional[ClockProtocol] = None):
        self._db = db
        self._clock = clock or SystemClock()

    def _insert_ignore(self, model, values: Dict[str, Any], index_elements: List[str]):
        """INSERT ... ON CONFLICT DO NOTHING where the dialect has it."""
        dialect = self._db.dialect_name
        if dialect == "sqlite":
            insert = sqlite.insert
        elif dialect == "postgresql":
            insert = postgresql.insert
        else:
            return None
        return insert(model).values(**values).on_conflict_do_nothing(
            index_elements=index_elements
        )

    # --------------------------------------------------------
    # SCANS
    # --------------------------------------------------------

    async def create_scan(self, scan: Scan) -> Scan:
        """Insert a new scan record."""
        now = self._clock.now()
        scan.created_at = scan.created_at or now
        scan.updated_at = now

        async with self._db.session() as session:
            session.add(ScanModel(
                scan_id=scan.scan_id,
                created_at=scan.created_at,
                **self._scan_values(scan),
            ))
            await session.commit()

        logger.debug(f"Scan created: {scan.scan_id}")
        return scan

    async def get_scan(self, scan_id: str) -> Optional[Scan]:
        async with self._db.session() as session:
            model = await session.get(ScanModel, scan_id)
            return self._model_to_scan(model) if model else None

    async def update_scan(self, scan: Scan, expected_state: ScanState) -> bool:
        """
        Write the scan if the stored state still equals `expected_state`.

        Returns:
            False when another writer moved the scan first
        """
        scan.updated_at = self._clock.now()

        stmt = (
            update(ScanModel)
            .where(ScanModel.scan_id == scan.scan_id)
            .where(ScanModel.state == expected_state)
            .values(**self._scan_values(scan))
            .execution_options(synchronize_session=False)
        )

        async with self._db.session() as session:
            result = await session.execute(stmt)
            updated = result.rowcount
            await session.commit()

        if updated != 1:
            logger.warning(
                f"Scan {scan.scan_id} not updated: expected state {expected_state.value}"
            )
            return False
        return True

    async def list_scans_by_tier(
        self,
        tier: MatchTier,
        since: datetime,
        until: Optional[datetime] = None,
    ) -> List[Scan]:
        """Completed scans of one tier created inside [since, until)."""
        query = (
            select(ScanModel)
            .where(ScanModel.match_tier == tier)
            .where(ScanModel.state == ScanState.COMPLETED)
            .where(ScanModel.created_at >= since)
        )
        if until is not None:
            query = query.where(ScanModel.created_at < until)
        query = query.order_by(ScanModel.created_at)

        async with self._db.session() as session:
            result = await session.execute(query)
            return [self._model_to_scan(m) for m in result.scalars().all()]

    def _scan_values(self, scan: Scan) -> Dict[str, Any]:
        return {
            "account_id": scan.account_id,
            "service_id": scan.service_id,
            "state": scan.state,
            "external_job_id": scan.external_job_id,
            "polling_required": scan.polling_required,
            "external_credential_ref": scan.external_credential_ref,
            "failure_reason": scan.failure_reason,
            "top_score": scan.top_score,
            "match_tier": scan.match_tier,
            "view_url": scan.view_url,
            "camera_id": scan.camera_id,
            "latitude": scan.location.latitude if scan.location else None,
            "longitude": scan.location.longitude if scan.location else None,
            "subject_id": scan.subject_id,
            "subject_name": scan.subject_name,
            "subject_type": scan.subject_type,
            "subject_photo_url": scan.subject_photo_url,
            "biometrics": list(scan.biometrics),
            "crimes": list(scan.crimes),
            "updated_at": scan.updated_at,
        }

    def _model_to_scan(self, model: ScanModel) -> Scan:
        location = None
        if model.latitude is not None and model.longitude is not None:
            location = Location(model.latitude, model.longitude)

        return Scan(
            scan_id=model.scan_id,
            account_id=model.account_id,
            state=model.state,
            external_job_id=model.external_job_id,
            top_score=model.top_score,
            match_tier=model.match_tier,
            view_url=model.view_url,
            polling_required=model.polling_required,
            external_credential_ref=model.external_credential_ref,
            service_id=model.service_id,
            camera_id=model.camera_id,
            location=location,
            subject_id=model.subject_id,
            subject_name=model.subject_name,
            subject_type=model.subject_type,
            subject_photo_url=model.subject_photo_url,
            biometrics=list(model.biometrics or []),
            crimes=list(model.crimes or []),
            failure_reason=model.failure_reason,
            created_at=_as_utc(model.created_at),
            updated_at=_as_utc(model.updated_at),
        )

    # --------------------------------------------------------
    # QUOTAS
    # --------------------------------------------------------

    async def get_quota(self, account_id: str, period: str) -> Optional[QuotaRecord]:
        query = select(QuotaModel).where(
            QuotaModel.account_id == account_id,
            QuotaModel.period == period,
        )
        async with self._db.session() as session:
            model = (await session.execute(query)).scalar_one_or_none()
            if model is None:
                return None
            return QuotaRecord(
                account_id=model.account_id,
                period=model.period,
                used=model.used,
                limit=model.scan_limit,
                last_warned_at=_as_utc(model.last_warned_at),
            )

    async def ensure_quota(self, account_id: str, period: str, limit: int) -> None:
        """Create the quota row if missing. Concurrent callers are safe."""
        values = {"account_id": account_id, "period": period, "used": 0, "scan_limit": limit}

        async with self._db.session() as session:
            stmt = self._insert_ignore(QuotaModel, values, ["account_id", "period"])
            if stmt is not None:
                await session.execute(stmt)
                await session.commit()
                return

            existing = await session.scalar(
                select(QuotaModel.id).where(
                    QuotaModel.account_id == account_id,
                    QuotaModel.period == period,
                )
            )
            if existing is not None:
                return
            session.add(QuotaModel(**values))
            try:
                await session.commit()
            except IntegrityError:
                # Lost the creation race; the row exists now.
                await session.rollback()

    async def increment_quota(self, account_id: str, period: str) -> bool:
        """Atomic compare-and-increment. False when used >= limit."""
        stmt = (
            update(QuotaModel)
            .where(QuotaModel.account_id == account_id)
            .where(QuotaModel.period == period)
            .where(QuotaModel.used < QuotaModel.scan_limit)
            .values(used=QuotaModel.used + 1)
            .execution_options(synchronize_session=False)
        )
        async with self._db.session() as session:
            result = await session.execute(stmt)
            updated = result.rowcount
            await session.commit()
        return updated == 1

    async def decrement_quota(self, account_id: str, period: str) -> bool:
        """Atomic decrement, never below zero."""
        stmt = (
            update(QuotaModel)
            .where(QuotaModel.account_id == account_id)
            .where(QuotaModel.period == period)
            .where(QuotaModel.used > 0)
            .values(used=QuotaModel.used - 1)
            .execution_options(synchronize_session=False)
        )
        async with self._db.session() as session:
            result = await session.execute(stmt)
            updated = result.rowcount
            await session.commit()
        return updated == 1

    async def set_quota_used(self, account_id: str, period: str, used: int) -> None:
        """Administrative reset of a counter."""
        stmt = (
            update(QuotaModel)
            .where(QuotaModel.account_id == account_id)
            .where(QuotaModel.period == period)
            .values(used=used)
            .execution_options(synchronize_session=False)
        )
        async with self._db.session() as session:
            await session.execute(stmt)
            await session.commit()

    async def mark_quota_warned(self, account_id: str, period: str, at: datetime) -> None:
        stmt = (
            update(QuotaModel)
            .where(QuotaModel.account_id == account_id)
            .where(QuotaModel.period == period)
            .values(last_warned_at=at)
            .execution_options(synchronize_session=False)
        )
        async with self._db.session() as session:
            await session.execute(stmt)
            await session.commit()

    # --------------------------------------------------------
    # CONSENT
    # --------------------------------------------------------

    async def get_consent(self, account_id: str) -> Optional[ConsentRecord]:
        async with self._db.session() as session:
            model = await session.get(ConsentModel, account_id)
            if model is None:
                return None
            return ConsentRecord(
                account_id=model.account_id,
                consent_status=model.consent_status,
                updated_at=_as_utc(model.updated_at),
            )

    async def set_consent(self, account_id: str, consent_status: bool) -> None:
        async with self._db.session() as session:
            await session.merge(ConsentModel(
                account_id=account_id,
                consent_status=consent_status,
                updated_at=self._clock.now(),
            ))
            await session.commit()

    # --------------------------------------------------------
    # ACCOUNT PROFILES
    # --------------------------------------------------------

    async def get_account_profile(self, account_id: str) -> Optional[AccountProfile]:
        async with self._db.session() as session:
            model = await session.get(AccountProfileModel, account_id)
            return self._model_to_profile(model) if model else None

    async def save_account_profile(self, profile: AccountProfile) -> None:
        thresholds = profile.thresholds
        async with self._db.session() as session:
            await session.merge(AccountProfileModel(
                account_id=profile.account_id,
                name=profile.name,
                email=profile.email,
                phone_number=profile.phone_number,
                unsubscribe_token=profile.unsubscribe_token,
                email_opt_out=profile.email_opt_out,
                email_opt_out_at=profile.email_opt_out_at,
                email_opt_out_reason=profile.email_opt_out_reason,
                threshold_high=thresholds.high if thresholds else None,
                threshold_medium=thresholds.medium if thresholds else None,
                threshold_low=thresholds.low if thresholds else None,
            ))
            await session.commit()

    async def set_unsubscribe_token(self, account_id: str, token: str) -> str:
        """
        Store `token` unless the account already has one.

        Returns:
            The token now on record
        """
        stmt = (
            update(AccountProfileModel)
            .where(AccountProfileModel.account_id == account_id)
            .where(AccountProfileModel.unsubscribe_token.is_(None))
            .values(unsubscribe_token=token)
            .execution_options(synchronize_session=False)
        )
        async with self._db.session() as session:
            await session.execute(stmt)
            await session.commit()
            stored = await session.scalar(
                select(AccountProfileModel.unsubscribe_token)
                .where(AccountProfileModel.account_id == account_id)
            )
        return stored or token

    async def opt_out_email(self, account_id: str, reason: str) -> None:
        stmt = (
            update(AccountProfileModel)
            .where(AccountProfileModel.account_id == account_id)
            .values(
                email_opt_out=True,
                email_opt_out_at=self._clock.now(),
                email_opt_out_reason=reason,
            )
            .execution_options(synchronize_session=False)
        )
        async with self._db.session() as session:
            await session.execute(stmt)
            await session.commit()
        logger.info(f"Account {account_id} opted out of email ({reason})")

    async def update_account_thresholds(
        self,
        account_id: str,
        thresholds: ThresholdConfig,
        updated_by: str = "user",
    ) -> bool:
        """Returns False when the profile does not exist."""
        stmt = (
            update(AccountProfileModel)
            .where(AccountProfileModel.account_id == account_id)
            .values(
                threshold_high=thresholds.high,
                threshold_medium=thresholds.medium,
                threshold_low=thresholds.low,
                thresholds_updated_at=self._clock.now(),
                thresholds_updated_by=updated_by,
            )
            .execution_options(synchronize_session=False)
        )
        async with self._db.session() as session:
            result = await session.execute(stmt)
            updated = result.rowcount
            await session.commit()
        return updated == 1

    def _model_to_profile(self, model: AccountProfileModel) -> AccountProfile:
        thresholds = None
        if None not in (model.threshold_high, model.threshold_medium, model.threshold_low):
            thresholds = ThresholdConfig(
                high=model.threshold_high,
                medium=model.threshold_medium,
                low=model.threshold_low,
                source=ThresholdSource.USER,
            )

        return AccountProfile(
            account_id=model.account_id,
            name=model.name,
            email=model.email,
            phone_number=model.phone_number,
            unsubscribe_token=model.unsubscribe_token,
            email_opt_out=model.email_opt_out,
            email_opt_out_at=_as_utc(model.email_opt_out_at),
            email_opt_out_reason=model.email_opt_out_reason,
            thresholds=thresholds,
        )

    # --------------------------------------------------------
    # SERVICE THRESHOLDS
    # --------------------------------------------------------

    async def get_service_thresholds(self, service_id: str) -> Optional[ThresholdConfig]:
        async with self._db.session() as session:
            model = await session.get(ServiceThresholdModel, service_id)
            if model is None:
                return None
            return ThresholdConfig(
                high=model.high,
                medium=model.medium,
                low=model.low,
                source=ThresholdSource.SERVICE,
            )

    async def save_service_thresholds(self, service_id: str, thresholds: ThresholdConfig) -> None:
        async with self._db.session() as session:
            await session.merge(ServiceThresholdModel(
                service_id=service_id,
                high=thresholds.high,
                medium=thresholds.medium,
                low=thresholds.low,
                updated_at=self._clock.now(),
            ))
            await session.commit()

    # --------------------------------------------------------
    # WEBHOOK SUBSCRIPTIONS
    # --------------------------------------------------------

    async def list_webhook_subscriptions(
        self,
        account_id: str,
        enabled_only: bool = True,
    ) -> List[WebhookSubscription]:
        query = select(WebhookSubscriptionModel).where(
            WebhookSubscriptionModel.account_id == account_id
        )
        if enabled_only:
            query = query.where(WebhookSubscriptionModel.enabled.is_(True))

        async with self._db.session() as session:
            result = await session.execute(query)
            return [
                WebhookSubscription(
                    webhook_id=m.webhook_id,
                    account_id=m.account_id,
                    url=m.url,
                    enabled=m.enabled,
                    created_at=_as_utc(m.created_at),
                )
                for m in result.scalars().all()
            ]

    async def save_webhook_subscription(self, subscription: WebhookSubscription) -> None:
        async with self._db.session() as session:
            await session.merge(WebhookSubscriptionModel(
                webhook_id=subscription.webhook_id,
                account_id=subscription.account_id,
                url=subscription.url,
                enabled=subscription.enabled,
                created_at=subscription.created_at or self._clock.now(),
            ))
            await session.commit()

    # --------------------------------------------------------
    # DEVICE TOKENS
    # --------------------------------------------------------

    async def list_device_tokens(
        self,
        account_id: str,
        include_stale: bool = False,
    ) -> List[DeviceToken]:
        query = select(DeviceTokenModel).where(DeviceTokenModel.account_id == account_id)
        if not include_stale:
            query = query.where(DeviceTokenModel.stale.is_(False))

        async with self._db.session() as session:
            result = await session.execute(query)
            return [
                DeviceToken(
                    account_id=m.account_id,
                    token=m.token,
                    platform=m.platform,
                    app_version=m.app_version,
                    registered_at=_as_utc(m.registered_at),
                    last_used_at=_as_utc(m.last_used_at),
                    failure_count=m.failure_count,
                    last_error=m.last_error,
                    stale=m.stale,
                )
                for m in result.scalars().all()
            ]

    async def register_device_token(self, device: DeviceToken) -> None:
        async with self._db.session() as session:
            await session.merge(DeviceTokenModel(
                account_id=device.account_id,
                token=device.token,
                platform=device.platform,
                app_version=device.app_version,
                registered_at=device.registered_at or self._clock.now(),
                failure_count=0,
                stale=False,
            ))
            await session.commit()

    async def record_device_token_failure(
        self,
        account_id: str,
        token: str,
        error: str,
        stale: bool = False,
    ) -> None:
        """Count a failed send; `stale` flags the token for pruning."""
        values: Dict[str, Any] = {
            "failure_count": DeviceTokenModel.failure_count + 1,
            "last_error": error[:128],
        }
        if stale:
            values["stale"] = True

        stmt = (
            update(DeviceTokenModel)
            .where(DeviceTokenModel.account_id == account_id)
            .where(DeviceTokenModel.token == token)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        async with self._db.session() as session:
            await session.execute(stmt)
            await session.commit()

    async def mark_device_tokens_used(self, account_id: str, tokens: List[str]) -> None:
        if not tokens:
            return
        stmt = (
            update(DeviceTokenModel)
            .where(DeviceTokenModel.account_id == account_id)
            .where(DeviceTokenModel.token.in_(tokens))
            .values(last_used_at=self._clock.now(), failure_count=0)
            .execution_options(synchronize_session=False)
        )
        async with self._db.session() as session:
            await session.execute(stmt)
            await session.commit()

    # --------------------------------------------------------
    # THREAT LOCATION JOURNAL
    # --------------------------------------------------------

    async def append_threat_location(
        self,
        subject_id: str,
        entry: ThreatLocationEntry,
    ) -> None:
        async with self._db.session() as session:
            session.add(ThreatLocationModel(
                subject_id=subject_id,
                account_id=entry.account_id,
                scan_id=entry.scan_id,
                latitude=entry.latitude,
                longitude=entry.longitude,
                recorded_at=entry.recorded_at,
            ))
            await session.commit()

    async def get_threat_journal(self, subject_id: str) -> ThreatLocationJournal:
        query = (
            select(ThreatLocationModel)
            .where(ThreatLocationModel.subject_id == subject_id)
            .order_by(ThreatLocationModel.recorded_at, ThreatLocationModel.id)
        )
        async with self._db.session() as session:
            result = await session.execute(query)
            entries = [
                ThreatLocationEntry(
                    latitude=m.latitude,
                    longitude=m.longitude,
                    recorded_at=_as_utc(m.recorded_at),
                    account_id=m.account_id,
                    scan_id=m.scan_id,
                )
                for m in result.scalars().all()
            ]
        return ThreatLocationJournal(subject_id=subject_id, entries=entries)
