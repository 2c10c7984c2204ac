from docsumm.core.audit import list_audit_events
from docsumm.db.models import AuditEventType
from docsumm.domain import ledger


async def test_get_or_create_user_is_idempotent(session):
    first = await ledger.get_or_create_user(session, "u-1", default_credits=5)
    second = await ledger.get_or_create_user(session, "u-1", default_credits=9)
    assert first.id == second.id
    assert await ledger.get_balance(session, "u-1") == 5


async def test_consume_never_goes_negative(session, user_id):
    assert await ledger.consume(session, user_id) == 2
    assert await ledger.consume(session, user_id) == 1
    assert await ledger.consume(session, user_id) == 0
    assert await ledger.consume(session, user_id) is None
    assert await ledger.get_balance(session, user_id) == 0


async def test_consume_unknown_user(session):
    assert await ledger.consume(session, "nobody") is None


async def test_refund_returns_new_balance_and_audits(session, user_id):
    await ledger.consume(session, user_id)
    assert await ledger.refund(session, user_id, summary_id="s-1") == 3

    events = await list_audit_events(session, "s-1")
    assert [e.event_type for e in events] == [AuditEventType.CREDIT_REFUNDED]


async def test_refund_unknown_user(session):
    assert await ledger.refund(session, "nobody") is None
