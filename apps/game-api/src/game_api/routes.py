"""API routers. Each endpoint calls one engine operation for the current player."""

from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from game_api.deps import get_current_player_id, get_db
from game_api.schemas import (
    AdvanceProgressRequest,
    CancelOfferRequest,
    CreateOfferRequest,
    UpdateEventSettingsRequest,
)
from nebula_core.engines.events import EventTriggerEngine
from nebula_core.engines.market import MarketTransactionEngine
from nebula_core.engines.upgrades import UpgradeTreeEngine
from nebula_core.persistence.ledger import Ledger

upgrades_router = APIRouter(prefix="/upgrades", tags=["upgrades"])
events_router = APIRouter(prefix="/events", tags=["events"])
market_router = APIRouter(prefix="/market", tags=["market"])


# --- Upgrades ---


@upgrades_router.post("/initialize")
def initialize_tree(
    player_id: int = Depends(get_current_player_id),
    db: Session = Depends(get_db),
):
    return UpgradeTreeEngine(db).initialize_tree(player_id).to_dict()


@upgrades_router.get("")
def get_tree(
    player_id: int = Depends(get_current_player_id),
    db: Session = Depends(get_db),
):
    return UpgradeTreeEngine(db).get_tree(player_id).to_dict()


@upgrades_router.get("/available")
def get_available_upgrades(
    player_id: int = Depends(get_current_player_id),
    db: Session = Depends(get_db),
):
    nodes = UpgradeTreeEngine(db).get_available_upgrades(player_id)
    return {"player_id": player_id, "upgrades": [node.to_dict() for node in nodes]}


@upgrades_router.get("/stats")
def get_upgrade_stats(
    player_id: int = Depends(get_current_player_id),
    db: Session = Depends(get_db),
):
    return UpgradeTreeEngine(db).get_upgrade_stats(player_id).to_dict()


@upgrades_router.get("/effects")
def get_upgrade_effects(
    player_id: int = Depends(get_current_player_id),
    db: Session = Depends(get_db),
):
    return {"player_id": player_id, "effects": UpgradeTreeEngine(db).get_upgrade_effects(player_id)}


@upgrades_router.post("/{slug}/progress")
def advance_progress(
    slug: str,
    body: AdvanceProgressRequest,
    player_id: int = Depends(get_current_player_id),
    db: Session = Depends(get_db),
):
    return UpgradeTreeEngine(db).advance_progress(player_id, slug, body.delta).to_dict()


@upgrades_router.post("/{slug}/purchase")
def purchase_level(
    slug: str,
    player_id: int = Depends(get_current_player_id),
    db: Session = Depends(get_db),
):
    return UpgradeTreeEngine(db).purchase_level(player_id, slug).to_dict()


# --- Events ---


@events_router.post("/evaluate")
def evaluate_events(
    player_id: int = Depends(get_current_player_id),
    db: Session = Depends(get_db),
):
    return EventTriggerEngine(db).evaluate(player_id).to_dict()


@events_router.get("")
def list_events(
    status: Optional[str] = None,
    player_id: int = Depends(get_current_player_id),
    db: Session = Depends(get_db),
):
    events = EventTriggerEngine(db).list_player_events(player_id, status=status)
    return {"player_id": player_id, "events": [event.to_dict() for event in events]}


@events_router.get("/settings")
def get_event_settings(
    player_id: int = Depends(get_current_player_id),
    db: Session = Depends(get_db),
):
    return EventTriggerEngine(db).get_settings(player_id).to_dict()


@events_router.put("/settings")
def update_event_settings(
    body: UpdateEventSettingsRequest,
    player_id: int = Depends(get_current_player_id),
    db: Session = Depends(get_db),
):
    view = EventTriggerEngine(db).update_settings(
        player_id,
        enabled_types=body.enabled_types,
        disabled_events=body.disabled_events,
        priority_events=body.priority_events,
    )
    return view.to_dict()


@events_router.get("/stats")
def get_event_stats(
    player_id: int = Depends(get_current_player_id),
    db: Session = Depends(get_db),
):
    return EventTriggerEngine(db).get_event_stats(player_id).to_dict()


@events_router.post("/{slug}/trigger")
def trigger_event(
    slug: str,
    player_id: int = Depends(get_current_player_id),
    db: Session = Depends(get_db),
):
    return EventTriggerEngine(db).trigger_event(player_id, slug).to_dict()


@events_router.post("/{slug}/complete")
def complete_event(
    slug: str,
    player_id: int = Depends(get_current_player_id),
    db: Session = Depends(get_db),
):
    return EventTriggerEngine(db).complete_event(player_id, slug).to_dict()


@events_router.post("/{slug}/cancel")
def cancel_event(
    slug: str,
    player_id: int = Depends(get_current_player_id),
    db: Session = Depends(get_db),
):
    return EventTriggerEngine(db).cancel_event(player_id, slug).to_dict()


# --- Market ---


@market_router.get("/offers")
def list_offers(
    item_type: Optional[str] = None,
    db: Session = Depends(get_db),
):
    offers = MarketTransactionEngine(db).list_active_offers(item_type=item_type)
    return {"offers": [offer.to_dict() for offer in offers]}


@market_router.post("/offers", status_code=201)
def create_offer(
    body: CreateOfferRequest,
    player_id: int = Depends(get_current_player_id),
    db: Session = Depends(get_db),
):
    view = MarketTransactionEngine(db).create_offer(
        seller_id=player_id,
        item_type=body.item_type,
        amount=body.amount,
        price=body.price,
        currency=body.currency,
        offer_type=body.offer_type,
        item_id=body.item_id,
        resource=body.resource,
        expires_at=body.expires_at,
    )
    return view.to_dict()


@market_router.get("/offers/{offer_id}")
def get_offer(offer_id: str, db: Session = Depends(get_db)):
    return MarketTransactionEngine(db).get_offer(offer_id).to_dict()


@market_router.post("/offers/{offer_id}/buy")
def execute_trade(
    offer_id: str,
    player_id: int = Depends(get_current_player_id),
    db: Session = Depends(get_db),
):
    return MarketTransactionEngine(db).execute_trade(player_id, offer_id).to_dict()


@market_router.post("/offers/{offer_id}/cancel")
def cancel_offer(
    offer_id: str,
    body: Optional[CancelOfferRequest] = None,
    player_id: int = Depends(get_current_player_id),
    db: Session = Depends(get_db),
):
    reason = body.reason if body else None
    return MarketTransactionEngine(db).cancel_offer(player_id, offer_id, reason=reason).to_dict()


@market_router.get("/transactions")
def get_transactions(
    player_id: int = Depends(get_current_player_id),
    db: Session = Depends(get_db),
):
    transactions = MarketTransactionEngine(db).get_player_transactions(player_id)
    return {"player_id": player_id, "transactions": [t.to_dict() for t in transactions]}


@market_router.get("/balances")
def get_balances(
    player_id: int = Depends(get_current_player_id),
    db: Session = Depends(get_db),
):
    balances = Ledger(db).balances(player_id)
    return {"player_id": player_id, "balances": {k: str(v) for k, v in balances.items()}}
