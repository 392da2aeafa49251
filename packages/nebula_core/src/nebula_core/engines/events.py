"""
Event Trigger Engine

Activates per-player gameplay events from catalog templates and keeps the
player's aggregated multiplier set in UserEventSettings.

The aggregate is never patched incrementally: after every change it is
recomputed by replaying the effect snapshots of the player's ACTIVE events.
"""

import logging
import random
from datetime import datetime, timedelta
from typing import Callable

from pydantic import ValidationError
from sqlalchemy.orm import Session

from basecore.settings import get_settings
from nebula_core.contracts.effects import (
    BASE_MULTIPLIERS,
    EventEffect,
    FlatReward,
    aggregate_multipliers,
    dump_modifiers,
    modifier_list_adapter,
)
from nebula_core.contracts.snapshots import EvaluationResult, EventSettingsView, EventStats, EventView
from nebula_core.contracts.triggers import parse_trigger_config
from nebula_core.contracts.types import AUTO_TRIGGER_TYPES, EventType, TxType, UserEventStatus
from nebula_core.engines.triggers import (
    TriggerContext,
    conditions_hold,
    cooldown_active,
    parse_event_conditions,
    should_trigger,
)
from nebula_core.errors import Conflict, InvalidArgument, NotFound
from nebula_core.persistence.ledger import Ledger
from nebula_core.persistence.models import EventTemplate, UserEvent, UserEventSettings
from nebula_core.persistence.repo import EventRepository, TemplateStore, load_player_metrics
from nebula_core.persistence.session import unit_of_work
from nebula_core.timeutil import ensure_utc, utcnow

logger = logging.getLogger(__name__)

DEFAULT_ENABLED_TYPES = sorted(AUTO_TRIGGER_TYPES)


def parse_effect(template: EventTemplate) -> EventEffect:
    try:
        return EventEffect.model_validate(template.effect or {})
    except ValidationError as e:
        raise InvalidArgument(
            f"Malformed effect on event {template.slug}: {e}",
            template_slug=template.slug,
        ) from e


def _event_view(event: UserEvent, template: EventTemplate) -> EventView:
    return EventView(
        id=event.id,
        slug=template.slug,
        name=template.name,
        type=template.type,
        status=event.status,
        triggered_at=event.triggered_at,
        expires_at=event.expires_at,
        completed_at=event.completed_at,
        effects=list(event.effects or []),
        progress=dict(event.progress or {}),
    )


def _settings_view(player_id: int, settings: UserEventSettings | None) -> EventSettingsView:
    if settings is None:
        return EventSettingsView(
            player_id=player_id,
            event_multipliers=dict(BASE_MULTIPLIERS),
            event_cooldowns={},
            enabled_types=list(DEFAULT_ENABLED_TYPES),
            disabled_events=[],
            priority_events=[],
            last_event_check=None,
        )
    return EventSettingsView(
        player_id=player_id,
        event_multipliers=dict(settings.event_multipliers or BASE_MULTIPLIERS),
        event_cooldowns=dict(settings.event_cooldowns or {}),
        enabled_types=list(settings.enabled_types or []),
        disabled_events=list(settings.disabled_events or []),
        priority_events=list(settings.priority_events or []),
        last_event_check=settings.last_event_check,
    )


class EventTriggerEngine:
    """
    Event Trigger Engine.

    `evaluate` is the periodic entry point; `trigger_event`, `complete_event`
    and `cancel_event` are explicit player or system actions.
    """

    def __init__(
        self,
        db: Session,
        store: TemplateStore | None = None,
        ledger: Ledger | None = None,
        draw: Callable[[], float] = random.random,
    ):
        self.db = db
        self.store = store or TemplateStore(db)
        self.ledger = ledger or Ledger(db, system_player_id=get_settings().SYSTEM_PLAYER_ID)
        self.draw = draw

    def evaluate(self, player_id: int, now: datetime | None = None) -> EvaluationResult:
        """
        One evaluation pass for a player.

        1. Lock (or lazily create) the player's settings
        2. Expire ACTIVE instances whose expiry has passed
        3. Run each active template through its gates and trigger rule
        4. Replay ACTIVE snapshots into the aggregate and persist it
        """
        now = ensure_utc(now) or utcnow()
        repo = EventRepository(self.db, player_id)

        with unit_of_work(self.db, "evaluate_events", player_id=player_id):
            settings = repo.lock_settings(DEFAULT_ENABLED_TYPES)

            expired = repo.expire_due(now)

            elapsed = 0.0
            if settings.last_event_check is not None:
                elapsed = max((now - settings.last_event_check).total_seconds(), 0.0)

            counts = repo.instance_counts()
            last_triggered = repo.last_triggered()
            completed_slugs = repo.completed_slugs()
            active_template_ids = {event.template_id for event in repo.list_events(UserEventStatus.ACTIVE.value)}
            metrics = load_player_metrics(self.db, player_id)

            enabled = set(settings.enabled_types or [])
            disabled = set(settings.disabled_events or [])
            cooldowns = settings.event_cooldowns or {}

            triggered: list[UserEvent] = []
            for template in self._ordered_templates(settings):
                if template.type not in AUTO_TRIGGER_TYPES or template.type not in enabled:
                    continue
                if template.slug in disabled or cooldown_active(cooldowns, template.slug, now):
                    continue
                if template.id in active_template_ids:
                    continue
                if not conditions_hold(parse_event_conditions(template.conditions, template.slug), metrics):
                    continue

                config = parse_trigger_config(template.type, template.trigger_config, template.slug)
                context = TriggerContext(
                    now=now,
                    elapsed_seconds=elapsed,
                    metrics=metrics,
                    instance_count=counts.get(template.id, 0),
                    last_triggered_at=last_triggered.get(template.id),
                    completed_slugs=completed_slugs,
                )
                if not should_trigger(config, context, self.draw):
                    continue

                event = self._activate(player_id, template, now)
                triggered.append(event)
                active_template_ids.add(template.id)
                counts[template.id] = counts.get(template.id, 0) + 1
                last_triggered[template.id] = now

            aggregate = self._refresh_aggregate(repo, settings)
            settings.last_event_check = now
            self.db.flush()

            result = EvaluationResult(
                player_id=player_id,
                active_events=[
                    _event_view(event, event.template)
                    for event in repo.list_events(UserEventStatus.ACTIVE.value)
                ],
                triggered_events=[_event_view(event, event.template) for event in triggered],
                expired_events=[_event_view(event, event.template) for event in expired],
                aggregated_multipliers=aggregate,
            )

        logger.info(
            f"Events evaluated: player_id={player_id}",
            extra={
                "player_id": player_id,
                "triggered": [event.slug for event in result.triggered_events],
                "expired": len(result.expired_events),
                "active": len(result.active_events),
            },
        )
        return result

    def _ordered_templates(self, settings: UserEventSettings) -> list[EventTemplate]:
        """Priority events first, in the player's priority order."""
        templates = self.store.list_active_event_templates()
        priority = list(settings.priority_events or [])
        rank = {slug: index for index, slug in enumerate(priority)}
        return sorted(templates, key=lambda t: (rank.get(t.slug, len(priority)), t.slug))

    def _activate(self, player_id: int, template: EventTemplate, now: datetime) -> UserEvent:
        effect = parse_effect(template)
        event = UserEvent(
            player_id=player_id,
            template=template,
            status=UserEventStatus.ACTIVE.value,
            triggered_at=now,
            expires_at=now + timedelta(seconds=effect.duration) if effect.duration > 0 else None,
            effects=dump_modifiers(effect.modifiers),
            progress={},
        )
        self.db.add(event)
        self.db.flush()
        return event

    def _refresh_aggregate(self, repo: EventRepository, settings: UserEventSettings) -> dict[str, float]:
        active = repo.list_events(UserEventStatus.ACTIVE.value)
        aggregate = aggregate_multipliers([event.effects or [] for event in active])
        settings.event_multipliers = aggregate
        return aggregate

    def trigger_event(self, player_id: int, slug: str, now: datetime | None = None) -> EventView:
        """
        Explicitly activate an event.

        This is the only way TRIGGERED_BY_ACTION and PASSIVE events start.
        Fails with Conflict if the event is already ACTIVE or on cooldown.
        """
        now = ensure_utc(now) or utcnow()
        repo = EventRepository(self.db, player_id)

        with unit_of_work(self.db, "trigger_event", player_id=player_id, template_slug=slug):
            settings = repo.lock_settings(DEFAULT_ENABLED_TYPES)
            template = self.store.get_event_template(slug)
            if not template.active:
                raise Conflict(f"Event {slug} is not active", player_id=player_id, template_slug=slug)
            if repo.get_active_event(template) is not None:
                raise Conflict(f"Event {slug} is already active", player_id=player_id, template_slug=slug)
            if cooldown_active(settings.event_cooldowns or {}, slug, now):
                raise Conflict(f"Event {slug} is on cooldown", player_id=player_id, template_slug=slug)

            # Validates the stored config even though no rule is applied
            parse_trigger_config(template.type, template.trigger_config, template.slug)
            event = self._activate(player_id, template, now)
            self._refresh_aggregate(repo, settings)
            view = _event_view(event, template)

        logger.info(
            f"Event triggered: {slug}",
            extra={"player_id": player_id, "template_slug": slug, "event_id": str(view.id)},
        )
        return view

    def complete_event(self, player_id: int, slug: str, now: datetime | None = None) -> EventView:
        """
        Complete the player's ACTIVE instance of an event.

        Flat rewards from the snapshot are credited to the player and the
        template's cooldown, if any, starts now.
        """
        now = ensure_utc(now) or utcnow()
        repo = EventRepository(self.db, player_id)

        with unit_of_work(self.db, "complete_event", player_id=player_id, template_slug=slug):
            settings = repo.lock_settings(DEFAULT_ENABLED_TYPES)
            template = self.store.get_event_template(slug)
            event = repo.get_active_event(template)
            if event is None:
                raise NotFound(f"No active {slug} event", player_id=player_id, template_slug=slug)

            event.status = UserEventStatus.COMPLETED.value
            event.completed_at = now

            for modifier in modifier_list_adapter.validate_python(event.effects or []):
                if isinstance(modifier, FlatReward):
                    self.ledger.credit(player_id, modifier.currency.value, modifier.amount)
                    logger.info(
                        f"Event reward credited: {modifier.amount} {modifier.currency}",
                        extra={
                            "player_id": player_id,
                            "template_slug": slug,
                            "currency": modifier.currency.value,
                            "amount": str(modifier.amount),
                            "reason": TxType.EVENT_REWARD.value,
                        },
                    )

            config = parse_trigger_config(template.type, template.trigger_config, template.slug)
            if config.cooldown_seconds:
                settings.event_cooldowns = {
                    **(settings.event_cooldowns or {}),
                    slug: (now + timedelta(seconds=config.cooldown_seconds)).isoformat(),
                }

            self.db.flush()
            self._refresh_aggregate(repo, settings)
            view = _event_view(event, template)

        logger.info(f"Event completed: {slug}", extra={"player_id": player_id, "template_slug": slug})
        return view

    def cancel_event(self, player_id: int, slug: str) -> EventView:
        repo = EventRepository(self.db, player_id)

        with unit_of_work(self.db, "cancel_event", player_id=player_id, template_slug=slug):
            settings = repo.lock_settings(DEFAULT_ENABLED_TYPES)
            template = self.store.get_event_template(slug)
            event = repo.get_active_event(template)
            if event is None:
                raise NotFound(f"No active {slug} event", player_id=player_id, template_slug=slug)

            event.status = UserEventStatus.CANCELLED.value
            self.db.flush()
            self._refresh_aggregate(repo, settings)
            view = _event_view(event, template)

        logger.info(f"Event cancelled: {slug}", extra={"player_id": player_id, "template_slug": slug})
        return view

    # --- Settings and read models ---

    def get_settings(self, player_id: int) -> EventSettingsView:
        return _settings_view(player_id, EventRepository(self.db, player_id).get_settings())

    def update_settings(
        self,
        player_id: int,
        enabled_types: list[str] | None = None,
        disabled_events: list[str] | None = None,
        priority_events: list[str] | None = None,
    ) -> EventSettingsView:
        if enabled_types is not None:
            try:
                enabled_types = [EventType(value).value for value in enabled_types]
            except ValueError as e:
                raise InvalidArgument(f"Unknown event type: {e}", player_id=player_id) from e

        repo = EventRepository(self.db, player_id)
        with unit_of_work(self.db, "update_event_settings", player_id=player_id):
            settings = repo.lock_settings(DEFAULT_ENABLED_TYPES)
            if enabled_types is not None:
                settings.enabled_types = enabled_types
            if disabled_events is not None:
                settings.disabled_events = list(disabled_events)
            if priority_events is not None:
                settings.priority_events = list(priority_events)
            self.db.flush()
            view = _settings_view(player_id, settings)
        return view

    def get_event_stats(self, player_id: int) -> EventStats:
        repo = EventRepository(self.db, player_id)
        by_status = repo.status_counts()
        settings = repo.get_settings()
        return EventStats(
            player_id=player_id,
            total=sum(by_status.values()),
            by_status=by_status,
            aggregated_multipliers=dict(
                (settings.event_multipliers if settings else None) or BASE_MULTIPLIERS
            ),
        )

    def list_player_events(self, player_id: int, status: str | None = None) -> list[EventView]:
        if status is not None:
            try:
                status = UserEventStatus(status).value
            except ValueError as e:
                raise InvalidArgument(f"Unknown event status: {status}", player_id=player_id) from e
        events = EventRepository(self.db, player_id).list_events(status)
        return [_event_view(event, event.template) for event in events]
