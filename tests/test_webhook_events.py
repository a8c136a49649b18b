from app.services import webhook_events


async def test_first_delivery_is_new(db):
    is_new, event = await webhook_events.record_event("evt_1", "customer.subscription.updated", {"object": {}})

    assert is_new is True
    assert event.processing_result == "pending"
    assert event.attempt_count == 1


async def test_redelivery_returns_existing_record(db):
    await webhook_events.record_event("evt_1", "customer.subscription.updated")
    await webhook_events.mark_processed("evt_1")

    is_new, event = await webhook_events.record_event("evt_1", "customer.subscription.updated")

    assert is_new is False
    assert event.processing_result == "success"
    assert await db.webhook_events.count_documents({"event_id": "evt_1"}) == 1


async def test_should_process_unknown_and_retryable_events(db):
    assert await webhook_events.should_process_event("evt_unknown") is True

    await webhook_events.record_event("evt_1", "invoice.payment_failed")
    await webhook_events.mark_failed("evt_1", "Subscription not found")
    assert await webhook_events.should_process_event("evt_1") is True

    await webhook_events.mark_failed("evt_1", "Subscription not found")
    # Three attempts recorded: the initial one plus two failures
    assert await webhook_events.should_process_event("evt_1") is False


async def test_processed_events_are_not_reprocessed(db):
    await webhook_events.record_event("evt_1", "invoice.payment_succeeded")
    event = await webhook_events.mark_processed("evt_1")

    assert event.processed is True
    assert event.processed_at is not None
    assert await webhook_events.should_process_event("evt_1") is False


async def test_failed_for_retry_and_recent_by_type(db):
    await webhook_events.record_event("evt_1", "invoice.payment_failed")
    await webhook_events.record_event("evt_2", "invoice.payment_failed")
    await webhook_events.record_event("evt_3", "customer.subscription.deleted")
    await webhook_events.mark_failed("evt_1", "boom")
    await webhook_events.mark_skipped("evt_2", "no subscription")

    failed = await webhook_events.get_failed_for_retry()
    recent = await webhook_events.get_recent_by_type("invoice.payment_failed")

    assert [event.event_id for event in failed] == ["evt_1"]
    assert failed[0].error == "boom"
    assert {event.event_id for event in recent} == {"evt_1", "evt_2"}
