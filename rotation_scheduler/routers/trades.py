from typing import List, Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from .. import trades
from ..auth import get_actor
from ..database import get_db
from ..models import Physician
from ..schemas import TradeOut, TradePropose, TradeResolve, TradeRespond

router = APIRouter()


@router.get("/mine", response_model=List[dict])
def my_trades(db: Session = Depends(get_db), actor: Optional[Physician] = Depends(get_actor)):
    return trades.get_my_trades(db, actor)


@router.get("/queue", response_model=List[dict])
def admin_queue(db: Session = Depends(get_db), actor: Optional[Physician] = Depends(get_actor)):
    return trades.get_admin_trade_queue(db, actor)


@router.get("/options", response_model=dict)
def options(db: Session = Depends(get_db), actor: Optional[Physician] = Depends(get_actor)):
    return trades.get_trade_options(db, actor)


@router.post("/", response_model=TradeOut)
def propose(data: TradePropose, db: Session = Depends(get_db),
            actor: Optional[Physician] = Depends(get_actor)):
    trade = trades.propose_trade(db, actor, data.requester_cell_id, data.target_cell_id, data.reason)
    return TradeOut.model_validate(trade)


@router.post("/{trade_id}/respond", response_model=TradeOut)
def respond(trade_id: int, data: TradeRespond, db: Session = Depends(get_db),
            actor: Optional[Physician] = Depends(get_actor)):
    return TradeOut.model_validate(trades.respond_to_trade(db, actor, trade_id, data.decision))


@router.post("/{trade_id}/cancel", response_model=TradeOut)
def cancel(trade_id: int, db: Session = Depends(get_db), actor: Optional[Physician] = Depends(get_actor)):
    return TradeOut.model_validate(trades.cancel_trade(db, actor, trade_id))


@router.post("/{trade_id}/resolve", response_model=TradeOut)
def resolve(trade_id: int, data: TradeResolve, db: Session = Depends(get_db),
            actor: Optional[Physician] = Depends(get_actor)):
    trade = trades.admin_resolve_trade(db, actor, trade_id, data.approve, data.admin_notes)
    return TradeOut.model_validate(trade)
