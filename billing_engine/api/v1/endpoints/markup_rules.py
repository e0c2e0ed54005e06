"""API endpoints for markup rule configuration."""
from typing import Optional, List
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, status
from sqlalchemy import select, or_

from billing_engine.api.deps import DB
from billing_engine.models.client import Client
from billing_engine.models.markup_rule import MarkupRule, MarkupRuleHistory
from billing_engine.schemas.billing import MarkupRuleCreate, MarkupRuleResponse
from billing_engine.services.markup_engine import snapshot_rule


router = APIRouter()


@router.get("", response_model=List[MarkupRuleResponse])
async def list_markup_rules(
    db: DB,
    client_id: Optional[UUID] = None,
    include_global: bool = True,
    is_active: Optional[bool] = True,
):
    """List markup rules, optionally for one client (plus global rules)."""
    query = select(MarkupRule)
    if client_id:
        if include_global:
            query = query.where(or_(MarkupRule.client_id == client_id, MarkupRule.client_id.is_(None)))
        else:
            query = query.where(MarkupRule.client_id == client_id)
    if is_active is not None:
        query = query.where(MarkupRule.is_active == is_active)

    query = query.order_by(MarkupRule.billing_category, MarkupRule.priority.desc(), MarkupRule.created_at)
    result = await db.execute(query)
    return result.scalars().all()


@router.post("", response_model=MarkupRuleResponse, status_code=status.HTTP_201_CREATED)
async def create_markup_rule(data: MarkupRuleCreate, db: DB):
    """Create a markup rule. Rules are never edited in place; deactivate and recreate."""
    if data.client_id and not await db.get(Client, data.client_id):
        raise HTTPException(status_code=404, detail="Client not found")
    if data.effective_to and data.effective_to < data.effective_from:
        raise HTTPException(status_code=400, detail="effective_to must not be before effective_from")

    values = data.model_dump()
    values["billing_category"] = data.billing_category.value if data.billing_category else None
    values["markup_type"] = data.markup_type.value
    rule = MarkupRule(**values)
    db.add(rule)
    await db.flush()

    db.add(MarkupRuleHistory(
        markup_rule_id=rule.id,
        change_type="CREATED",
        new_values=snapshot_rule(rule),
    ))
    await db.commit()
    await db.refresh(rule)
    return rule


@router.post("/{rule_id}/deactivate", response_model=MarkupRuleResponse)
async def deactivate_markup_rule(
    rule_id: UUID,
    db: DB,
    reason: Optional[str] = Query(None, max_length=500),
):
    """Deactivate a markup rule. Invoices already assembled keep their amounts."""
    rule = await db.get(MarkupRule, rule_id)
    if not rule:
        raise HTTPException(status_code=404, detail="Markup rule not found")
    if not rule.is_active:
        raise HTTPException(status_code=409, detail="Markup rule is already inactive")

    previous = snapshot_rule(rule)
    rule.is_active = False
    db.add(MarkupRuleHistory(
        markup_rule_id=rule.id,
        change_type="DEACTIVATED",
        previous_values=previous,
        new_values=snapshot_rule(rule),
        change_reason=reason,
    ))
    await db.commit()
    await db.refresh(rule)
    return rule
