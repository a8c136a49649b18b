"""
Stripe webhook processing.

``dispatch_event`` routes a verified event to its handler by ``event["type"]``.
Handlers either complete or raise; the HTTP layer acknowledges Stripe either
way so a failing handler never triggers a retry storm, and failures surface
through the logs and the ``webhook_events`` collection.

Idempotency differs by family:

* sale/payment events key on the Sale row (session id or payment intent id,
  both unique in the ``sales`` collection);
* subscription and invoice events are recorded in ``webhook_events`` first
  and skipped when that event id already finished with ``success``.

Money movements that touch several documents (sale + purchase + ledger +
tier, refund reversal, payout reversal) run through ``run_in_transaction()``,
which replays the whole unit of work on transient write conflicts.
Emails and in-app notifications are sent only after the writes commit, and
their failures are logged rather than raised.
"""
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional
import logging

from pymongo.errors import DuplicateKeyError
from starlette.concurrency import run_in_threadpool

from app.core.config import settings
from app.db.session import db, run_in_transaction
from app.models.resource import ResourcePurchase
from app.models.sale import Sale
from app.models.subscription import UserSubscription
from app.models.user import User
from app.models.withdrawal import WithdrawalRequest
from app.services import emailing, ledger, seller_tier, stripe_service, subscription as subscriptions, webhook_events
from app.services import invoice as invoices, withdrawal as withdrawals
from app.services.notification import create_notification_helper, notify_all_admins
from app.services.royalty import calculate_royalty, format_currency

logger = logging.getLogger(__name__)

Event = Dict[str, Any]


async def _side_effect(description: str, action: Awaitable):
    try:
        await action
    except Exception as e:
        logger.error(f"Failed to {description}: {str(e)}")


async def _get_user(user_id: Optional[str]) -> Optional[User]:
    if not user_id:
        return None
    user = await db.users.find_one({"id": user_id})
    return User(**user) if user else None


def _object(event: Event) -> Dict[str, Any]:
    return event["data"]["object"]


def _format_date(timestamp: Optional[int], fallback: str) -> str:
    return datetime.utcfromtimestamp(timestamp).strftime("%d %b %Y") if timestamp else fallback


# ---------------------------------------------------------------------------
# Resource sales
# ---------------------------------------------------------------------------

async def handle_checkout_session_completed(event: Event):
    session = _object(event)
    logger.info(f"Checkout session completed: {session['id']} (mode={session.get('mode')})")

    if session.get("mode") == "subscription":
        await handle_subscription_checkout_completed(session)
        return
    await settle_resource_sale(session)


async def _find_sale_for_session(session: Dict[str, Any]) -> Optional[dict]:
    clauses = [{"stripe_session_id": session["id"]}]
    if session.get("payment_intent"):
        clauses.append({"stripe_payment_intent_id": session["payment_intent"]})
    return await db.sales.find_one({"$or": clauses})


async def settle_resource_sale(session: Dict[str, Any]) -> Optional[Sale]:
    """Record a paid resource checkout: sale, purchase, ledger credit and tier update"""
    if await _find_sale_for_session(session):
        logger.info(f"Sale already recorded for session {session['id']}")
        return None

    metadata = session.get("metadata") or {}
    resource_id = metadata.get("resourceId")
    seller_id = metadata.get("sellerId")
    buyer_id = metadata.get("buyerId")
    if not resource_id or not seller_id or not buyer_id:
        logger.error(f"Missing required metadata in checkout session {session['id']}: {metadata}")
        return None

    resource = await db.resources.find_one({"id": resource_id})
    if not resource:
        logger.error(f"Resource not found: {resource_id}")
        return None

    tier = await seller_tier.get_or_create_tier(seller_id)
    amount = session["amount_total"]
    currency = session["currency"].upper()
    buyer_country = metadata.get("buyerCountry") or "GB"
    buyer_email = metadata.get("buyerEmail") or session.get("customer_email")
    royalty_rate = float(metadata["royaltyRate"]) if metadata.get("royaltyRate") else tier.royalty_rate

    royalty = calculate_royalty(
        amount,
        currency,
        buyer_country,
        royalty_rate,
        metadata.get("sellerTier") or tier.current_tier,
    )

    sale = Sale(
        resource_id=resource_id,
        seller_id=seller_id,
        buyer_id=buyer_id,
        price=royalty.original_price,
        currency=currency,
        vat_amount=royalty.vat_amount,
        net_price=royalty.net_price,
        transaction_fee=royalty.transaction_fee,
        platform_commission=royalty.platform_commission,
        seller_earnings=royalty.seller_earnings,
        royalty_rate=royalty.royalty_rate,
        seller_tier=royalty.seller_tier,
        status="completed",
        stripe_charge_id=session.get("payment_intent"),
        stripe_payment_intent_id=session.get("payment_intent"),
        stripe_session_id=session["id"],
        buyer_email=buyer_email,
        buyer_country=buyer_country,
    )
    purchase = ResourcePurchase(
        resource_id=resource_id,
        buyer_id=buyer_id,
        sale_id=sale.id,
        price_paid=amount,
        currency=currency,
        stripe_session_id=session["id"],
    )

    async def record(txn):
        # The sale insert goes first: its unique session id is the idempotency gate
        await db.sales.insert_one(sale.model_dump(exclude_none=True), session=txn)
        await db.resource_purchases.insert_one(purchase.model_dump(exclude_none=True), session=txn)
        await ledger.create_entry(
            seller_id=seller_id,
            type="credit",
            amount=royalty.seller_earnings,
            currency=currency,
            description=f"Sale of \"{resource['title']}\"",
            reference_type="sale",
            reference_id=sale.id,
            reference_model="Sale",
            metadata={
                "resource_id": resource_id,
                "resource_title": resource["title"],
                "buyer_id": buyer_id,
                "buyer_email": buyer_email,
                "checkout_session_id": session["id"],
            },
            session=txn,
        )
        await seller_tier.recalculate_for_seller(seller_id, session=txn)
        await seller_tier.record_sale_stats(seller_id, royalty.net_price, royalty.seller_earnings, session=txn)
        await db.resources.update_one({"id": resource_id}, {"$inc": {"downloads": 1}}, session=txn)

    try:
        await run_in_transaction(record)
    except DuplicateKeyError:
        logger.info(f"Sale for session {session['id']} was recorded concurrently, skipping")
        return None

    logger.info(f"Sale created for session {session['id']}: sale {sale.id}")

    earnings = format_currency(royalty.seller_earnings, currency)
    seller = await _get_user(seller_id)
    if seller and seller.email:
        await _side_effect("send sale notification email", emailing.send_sale_notification(
            seller.email, seller.first_name, resource["title"], earnings, buyer_email,
        ))
    await _side_effect("create sale notification", create_notification_helper(
        user_id=seller_id,
        title="Resource Sold!",
        message=f"Your resource \"{resource['title']}\" was purchased for {earnings}",
        notification_type="sale",
        priority="high",
        action_url=f"/teacher/resources/{resource_id}",
        action_text="View Resource",
        metadata={
            "sale_id": sale.id,
            "resource_id": resource_id,
            "resource_title": resource["title"],
            "amount": royalty.seller_earnings,
            "currency": currency,
        },
    ))
    if settings.INVOICE_AUTO_GENERATE:
        await _side_effect("generate invoice", invoices.generate_invoice(sale))
    return sale


async def handle_payment_intent_succeeded(event: Event):
    payment_intent = _object(event)
    logger.info(f"Payment succeeded: {payment_intent['id']}")

    existing = await db.sales.find_one({"stripe_payment_intent_id": payment_intent["id"]})
    if existing:
        logger.info(f"Sale already recorded for payment intent {payment_intent['id']}")
        return
    # Sales are created from checkout.session.completed; a lone intent needs a human look
    logger.warning(f"Payment succeeded but no sale found: {payment_intent['id']} {payment_intent.get('metadata')}")


async def handle_payment_intent_failed(event: Event):
    payment_intent = _object(event)
    logger.info(f"Payment failed: {payment_intent['id']}")

    reason = (payment_intent.get("last_payment_error") or {}).get("message") or "Payment failed"
    result = await db.sales.update_one(
        {"stripe_payment_intent_id": payment_intent["id"], "status": "pending"},
        {"$set": {"status": "failed", "failure_reason": reason, "updated_at": datetime.utcnow()}},
    )
    if result.modified_count:
        logger.info(f"Sale for payment intent {payment_intent['id']} marked as failed")


async def handle_charge_refunded(event: Event):
    charge = _object(event)
    logger.info(f"Charge refunded: {charge['id']}")

    clauses = [{"stripe_charge_id": charge["id"]}]
    if charge.get("payment_intent"):
        clauses.append({"stripe_payment_intent_id": charge["payment_intent"]})
    sale_doc = await db.sales.find_one({"$or": clauses})
    if not sale_doc:
        logger.warning(f"No sale found for refunded charge: {charge['id']}")
        return

    sale = Sale(**sale_doc)
    if sale.status == "refunded":
        logger.info(f"Sale {sale.id} already refunded")
        return

    refunds = (charge.get("refunds") or {}).get("data") or []
    refund_reason = (refunds[0].get("reason") if refunds else None) or "Customer requested refund"
    now = datetime.utcnow()

    async def reverse(txn):
        result = await db.sales.update_one(
            {"id": sale.id, "status": {"$ne": "refunded"}},
            {"$set": {
                "status": "refunded",
                "refunded_at": now,
                "refund_amount": charge.get("amount_refunded"),
                "refund_reason": refund_reason,
                "updated_at": now,
            }},
            session=txn,
        )
        if result.modified_count == 0:
            return False

        await ledger.create_entry(
            seller_id=sale.seller_id,
            type="debit",
            amount=sale.seller_earnings,
            currency=sale.currency,
            description=f"Refund for sale of resource {sale.resource_id}",
            reference_type="refund",
            reference_id=sale.id,
            reference_model="Sale",
            metadata={"original_sale_id": sale.id, "stripe_charge_id": charge["id"]},
            session=txn,
        )
        if sale.transaction_fee > 0:
            await ledger.create_entry(
                seller_id=sale.seller_id,
                type="credit",
                amount=sale.transaction_fee,
                currency=sale.currency,
                description="Transaction fee refund",
                reference_type="refund",
                reference_id=sale.id,
                reference_model="Sale",
                metadata={"original_sale_id": sale.id},
                session=txn,
            )
        await db.resource_purchases.update_one(
            {"sale_id": sale.id}, {"$set": {"status": "refunded"}}, session=txn
        )
        await db.invoices.update_one({"sale_id": sale.id}, {"$set": {"status": "refunded"}}, session=txn)
        if await db.seller_tiers.find_one({"seller_id": sale.seller_id}, session=txn):
            await seller_tier.recalculate_for_seller(sale.seller_id, session=txn)
        return True

    if not await run_in_transaction(reverse):
        logger.info(f"Sale {sale.id} refunded concurrently, skipping")
        return

    logger.info(f"Refund processed for sale {sale.id}")

    seller = await _get_user(sale.seller_id)
    if seller and seller.email:
        resource = await db.resources.find_one({"id": sale.resource_id})
        await _side_effect("send refund email", emailing.send_refund_notification(
            seller.email,
            seller.first_name,
            resource["title"] if resource else "Resource",
            format_currency(sale.seller_earnings, sale.currency),
            refund_reason,
        ))


# ---------------------------------------------------------------------------
# Payouts and connected accounts
# ---------------------------------------------------------------------------

async def handle_payout_paid(event: Event):
    payout = _object(event)
    logger.info(f"Payout paid: {payout['id']}")

    withdrawal_doc = await db.withdrawal_requests.find_one({"stripe_payout_id": payout["id"]})
    if not withdrawal_doc:
        logger.warning(f"No withdrawal found for payout: {payout['id']}")
        return

    withdrawal = WithdrawalRequest(**withdrawal_doc)
    if withdrawal.status != "completed":
        now = datetime.utcnow()
        await db.withdrawal_requests.update_one(
            {"id": withdrawal.id},
            {"$set": {"status": "completed", "completed_at": now, "updated_at": now}},
        )
        logger.info(f"Withdrawal marked as completed: {withdrawal.id}")

    seller = await _get_user(withdrawal.seller_id)
    if seller and seller.email:
        await _side_effect("send payout confirmation email", emailing.send_payout_confirmation(
            seller.email,
            seller.first_name,
            format_currency(withdrawal.net_amount, withdrawal.currency),
            _format_date(payout.get("arrival_date"), "soon"),
        ))


async def handle_payout_failed(event: Event):
    payout = _object(event)
    logger.info(f"Payout failed: {payout['id']}")

    withdrawal_doc = await db.withdrawal_requests.find_one({"stripe_payout_id": payout["id"]})
    if not withdrawal_doc:
        logger.warning(f"No withdrawal found for failed payout: {payout['id']}")
        return

    withdrawal = WithdrawalRequest(**withdrawal_doc)
    failure_message = payout.get("failure_message") or "Payout failed"

    if not await withdrawals.reverse_withdrawal(withdrawal, failure_message, {"stripe_payout_id": payout["id"]}):
        logger.info(f"Withdrawal {withdrawal.id} already failed, skipping reversal")
        return

    logger.info(f"Failed payout handled for withdrawal {withdrawal.id}")

    seller = await _get_user(withdrawal.seller_id)
    if seller and seller.email:
        await _side_effect("send payout failure email", emailing.send_payout_failed(
            seller.email,
            seller.first_name,
            format_currency(withdrawal.amount, withdrawal.currency),
            failure_message,
        ))
    await _side_effect("notify admins of failed payout", notify_all_admins(
        title="Payout failed",
        message=f"Payout {payout['id']} for withdrawal {withdrawal.id} failed: {failure_message}",
        priority="high",
        action_url="/admin/withdrawals",
        metadata={"withdrawal_id": withdrawal.id, "stripe_payout_id": payout["id"]},
    ))


async def handle_account_updated(event: Event):
    account = _object(event)
    logger.info(f"Account updated: {account['id']}")

    user = await db.users.find_one({"stripe_account_id": account["id"]})
    if not user:
        logger.warning(f"No user found for Stripe account: {account['id']}")
        return

    previous_status = user.get("stripe_account_status")
    currently_due = (account.get("requirements") or {}).get("currently_due") or []
    if currently_due:
        status = "pending_verification"
    else:
        status = "active" if account.get("charges_enabled") else "restricted"

    await db.users.update_one(
        {"id": user["id"]},
        {"$set": {
            "stripe_account_status": status,
            "stripe_payouts_enabled": bool(account.get("payouts_enabled")),
            "stripe_requirements": currently_due,
        }},
    )

    if previous_status != status:
        logger.info(f"Account {account['id']} status changed: {previous_status} -> {status}")
        if status in ("active", "restricted") and user.get("email"):
            await _side_effect("send account status email", emailing.send_account_status(
                user["email"], user.get("first_name"), status, currently_due,
            ))


async def handle_external_account_created(event: Event):
    external_account = _object(event)
    logger.info(f"External account created: {external_account['id']}")

    user = await db.users.find_one({"stripe_account_id": external_account.get("account")})
    if not user:
        logger.warning(f"No user found for Stripe account: {external_account.get('account')}")
        return

    if user.get("email"):
        await _side_effect("send bank account email", emailing.send_bank_account_connected(
            user["email"], user.get("first_name"), external_account.get("bank_name"), external_account.get("last4"),
        ))
    logger.info(f"External account connected for user {user['id']}")


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------

async def handle_subscription_checkout_completed(session: Dict[str, Any]) -> Optional[UserSubscription]:
    metadata = session.get("metadata") or {}
    user_id = metadata.get("userId")
    plan_id = metadata.get("planId")
    if not user_id or not plan_id:
        logger.error(f"Missing userId or planId in subscription checkout {session['id']}: {metadata}")
        return None

    existing = await db.user_subscriptions.find_one({
        "user_id": user_id,
        "stripe_subscription_id": session.get("subscription"),
    })
    if existing:
        logger.info(f"Subscription already exists for session {session['id']}, skipping")
        return None

    stripe_subscription = await run_in_threadpool(stripe_service.retrieve_subscription, session["subscription"])
    plan = await subscriptions.get_plan(plan_id)
    if not plan:
        logger.error(f"Subscription plan not found: {plan_id}")
        return None

    status = subscriptions.map_stripe_status(stripe_subscription.get("status"), "active")
    period_start, period_end = subscriptions.extract_period(stripe_subscription)
    plan_name = metadata.get("planName") or plan.name

    user_subscription = UserSubscription(
        user_id=user_id,
        plan_id=plan_id,
        status=status,
        stripe_subscription_id=session["subscription"],
        stripe_customer_id=session.get("customer"),
        start_date=period_start,
        current_period_start=period_start,
        current_period_end=period_end,
        trial_end_date=subscriptions.from_timestamp(stripe_subscription.get("trial_end")),
        price_paid=session.get("amount_total") or 0,
        metadata={"checkout_session_id": session["id"], "plan_name": plan_name},
    )
    await db.user_subscriptions.insert_one(user_subscription.model_dump())
    await db.users.update_one({"id": user_id}, {"$set": {"stripe_customer_id": session.get("customer")}})
    logger.info(f"Subscription created: {user_subscription.id} for user {user_id}")

    user = await _get_user(user_id)
    if user and user.email:
        await _side_effect("send subscription confirmation email", emailing.send_subscription_email(
            user.email,
            user.first_name,
            "Your subscription is active",
            f"Thanks for subscribing to {plan_name}."
            + (" Your free trial has started." if status == "trial" else ""),
            amount=format_currency(session.get("amount_total") or 0, plan.currency),
            next_billing_date=period_end.strftime("%d %b %Y") if period_end else None,
        ))
    await _side_effect("create subscription notification", create_notification_helper(
        user_id=user_id,
        title="Subscription Activated!",
        message=f"Your {plan_name} subscription is now active.",
        notification_type="subscription",
        priority="high",
        action_url="/dashboard/subscription",
        action_text="View Subscription",
        metadata={"subscription_id": user_subscription.id, "plan_name": plan_name},
    ))
    return user_subscription


async def _process_recorded(event: Event, metadata: Dict[str, Any], process: Callable[[], Awaitable[Optional[str]]]):
    """Run ``process`` at most once to success for this Stripe event id.

    ``process`` returns None on success or a reason string for an expected
    failure (missing user, plan or subscription); unexpected errors are
    recorded and re-raised.
    """
    is_new, record = await webhook_events.record_event(event["id"], event["type"], event.get("data"), metadata)
    if not is_new and record.processing_result == "success":
        logger.info(f"Event {event['id']} already successfully processed, skipping")
        return

    try:
        failure = await process()
    except Exception as e:
        await webhook_events.mark_failed(event["id"], str(e))
        raise

    if failure:
        await webhook_events.mark_failed(event["id"], failure)
    else:
        await webhook_events.mark_processed(event["id"])


async def handle_subscription_created(event: Event):
    stripe_subscription = _object(event)
    logger.info(f"Subscription created: {stripe_subscription['id']}")

    async def process():
        if await subscriptions.find_by_stripe_subscription_id(stripe_subscription["id"]):
            logger.info(f"Subscription {stripe_subscription['id']} already tracked")
            return None

        user = await db.users.find_one({"stripe_customer_id": stripe_subscription.get("customer")})
        if not user:
            return "User not found"

        items = (stripe_subscription.get("items") or {}).get("data") or []
        price_id = ((items[0].get("price") or {}).get("id")) if items else None
        plan = await subscriptions.find_plan_by_stripe_price_id(price_id)
        if not plan:
            return "Plan not found"

        period_start, period_end = subscriptions.extract_period(stripe_subscription)
        record = UserSubscription(
            user_id=user["id"],
            plan_id=plan.id,
            status=subscriptions.map_stripe_status(stripe_subscription.get("status"), "active"),
            stripe_subscription_id=stripe_subscription["id"],
            stripe_customer_id=stripe_subscription.get("customer"),
            start_date=period_start,
            current_period_start=period_start,
            current_period_end=period_end,
            trial_end_date=subscriptions.from_timestamp(stripe_subscription.get("trial_end")),
        )
        await db.user_subscriptions.insert_one(record.model_dump())
        logger.info(f"Subscription record created for {stripe_subscription['id']}")
        return None

    await _process_recorded(event, {
        "subscription_id": stripe_subscription["id"],
        "customer_id": stripe_subscription.get("customer"),
    }, process)


async def handle_subscription_updated(event: Event):
    stripe_subscription = _object(event)
    logger.info(f"Subscription updated: {stripe_subscription['id']}")

    async def process():
        current = await subscriptions.find_by_stripe_subscription_id(stripe_subscription["id"])
        if not current:
            return "Subscription not found"

        status = subscriptions.map_stripe_status(stripe_subscription.get("status"), current.status)
        period_start, period_end = subscriptions.extract_period(stripe_subscription)
        updates = {
            "status": status,
            "cancel_at_period_end": bool(stripe_subscription.get("cancel_at_period_end")),
        }
        if period_start:
            updates["current_period_start"] = period_start
        if period_end:
            updates["current_period_end"] = period_end
        if stripe_subscription.get("canceled_at"):
            updates["cancelled_at"] = subscriptions.from_timestamp(stripe_subscription["canceled_at"])
        if stripe_subscription.get("cancel_at"):
            updates["end_date"] = subscriptions.from_timestamp(stripe_subscription["cancel_at"])

        await subscriptions.update_from_stripe_event(stripe_subscription["id"], updates)
        logger.info(f"Subscription {stripe_subscription['id']} updated to status: {status}")

        if status == "past_due":
            user = await _get_user(current.user_id)
            if user and user.email:
                await _side_effect("send payment failed email", emailing.send_subscription_email(
                    user.email,
                    user.first_name,
                    "Subscription payment failed",
                    "We couldn't take your latest subscription payment. We'll retry within 3-5 days.",
                    action_path="/dashboard/billing",
                ))
        return None

    await _process_recorded(event, {
        "subscription_id": stripe_subscription["id"],
        "customer_id": stripe_subscription.get("customer"),
    }, process)


async def handle_subscription_deleted(event: Event):
    stripe_subscription = _object(event)
    logger.info(f"Subscription deleted: {stripe_subscription['id']}")

    async def process():
        current = await subscriptions.find_by_stripe_subscription_id(stripe_subscription["id"])
        if not current:
            return "Subscription not found"

        await subscriptions.update_from_stripe_event(
            stripe_subscription["id"], {"status": "expired", "end_date": datetime.utcnow()}
        )
        logger.info(f"Subscription {stripe_subscription['id']} marked as expired")

        plan = await subscriptions.get_plan(current.plan_id)
        plan_name = plan.name if plan else "your"
        user = await _get_user(current.user_id)
        if user and user.email:
            await _side_effect("send subscription cancelled email", emailing.send_subscription_email(
                user.email,
                user.first_name,
                "Your subscription has ended",
                f"Your {plan_name} subscription has ended. Renew to keep using premium features.",
                action_path="/pricing",
            ))
        await _side_effect("create subscription ended notification", create_notification_helper(
            user_id=current.user_id,
            title="Subscription Ended",
            message=f"Your {plan_name} subscription has ended. Renew to continue accessing premium features.",
            notification_type="subscription",
            action_url="/pricing",
            action_text="View Plans",
        ))
        return None

    await _process_recorded(event, {
        "subscription_id": stripe_subscription["id"],
        "customer_id": stripe_subscription.get("customer"),
    }, process)


async def _record_skipped(event: Event, reason: str):
    invoice = _object(event)
    await webhook_events.record_event(event["id"], event["type"], event.get("data"), {"customer_id": invoice.get("customer")})
    await webhook_events.mark_skipped(event["id"], reason)
    logger.info(f"Event {event['id']} skipped: {reason}")


def _invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    if invoice.get("subscription"):
        return invoice["subscription"]
    # Newer API versions nest the subscription under the invoice parent
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    return details.get("subscription")


async def handle_invoice_payment_failed(event: Event):
    invoice = _object(event)
    subscription_id = _invoice_subscription_id(invoice)
    if not subscription_id:
        await _record_skipped(event, "Invoice has no subscription")
        return
    logger.info(f"Invoice payment failed: {invoice['id']}")

    async def process():
        current = await subscriptions.find_by_stripe_subscription_id(subscription_id)
        if not current:
            return "Subscription not found"

        await subscriptions.update_from_stripe_event(subscription_id, {"status": "past_due"})
        logger.info(f"Subscription {subscription_id} marked as past_due")

        user = await _get_user(current.user_id)
        if user and user.email:
            await _side_effect("send payment failed email", emailing.send_subscription_email(
                user.email,
                user.first_name,
                "Subscription payment failed",
                "We couldn't take your subscription payment. "
                f"Next attempt: {_format_date(invoice.get('next_payment_attempt'), 'soon')}.",
                amount=format_currency(invoice.get("amount_due") or 0, (invoice.get("currency") or "gbp").upper()),
                action_path="/dashboard/billing",
            ))
        return None

    await _process_recorded(event, {
        "subscription_id": subscription_id,
        "customer_id": invoice.get("customer"),
    }, process)


async def handle_invoice_payment_succeeded(event: Event):
    invoice = _object(event)
    subscription_id = _invoice_subscription_id(invoice)
    if not subscription_id:
        await _record_skipped(event, "Invoice has no subscription")
        return
    if invoice.get("billing_reason") == "subscription_create":
        # First invoices are settled by checkout.session.completed
        await _record_skipped(event, "First invoice handled by checkout")
        return
    logger.info(f"Invoice payment succeeded: {invoice['id']} for subscription {subscription_id}")

    async def process():
        current = await subscriptions.find_by_stripe_subscription_id(subscription_id)
        if not current:
            return "Subscription not found"

        stripe_subscription = await run_in_threadpool(stripe_service.retrieve_subscription, subscription_id)
        period_start, period_end = subscriptions.extract_period(stripe_subscription)
        updated = await subscriptions.update_from_stripe_event(subscription_id, {
            "status": "active",
            "current_period_start": period_start or current.current_period_start,
            "current_period_end": period_end or current.current_period_end,
            "usage": subscriptions.fresh_usage(),
        })
        logger.info(f"Subscription {subscription_id} renewed until {updated.current_period_end}")

        lines = (invoice.get("lines") or {}).get("data") or []
        next_billing = (lines[0].get("period") or {}).get("end") if lines else None
        plan = await subscriptions.get_plan(current.plan_id)
        user = await _get_user(current.user_id)
        if user and user.email:
            await _side_effect("send renewal email", emailing.send_subscription_email(
                user.email,
                user.first_name,
                "Your subscription has renewed",
                f"Your {plan.name if plan else ''} subscription has been renewed.",
                amount=format_currency(invoice.get("amount_paid") or 0, (invoice.get("currency") or "gbp").upper()),
                next_billing_date=_format_date(next_billing, updated.current_period_end.strftime("%d %b %Y")),
            ))
        return None

    await _process_recorded(event, {
        "subscription_id": subscription_id,
        "customer_id": invoice.get("customer"),
    }, process)


EVENT_HANDLERS: Dict[str, Callable[[Event], Awaitable[None]]] = {
    "checkout.session.completed": handle_checkout_session_completed,
    "payment_intent.succeeded": handle_payment_intent_succeeded,
    "payment_intent.payment_failed": handle_payment_intent_failed,
    "charge.refunded": handle_charge_refunded,
    "payout.paid": handle_payout_paid,
    "payout.failed": handle_payout_failed,
    "account.updated": handle_account_updated,
    "account.external_account.created": handle_external_account_created,
    "customer.subscription.created": handle_subscription_created,
    "customer.subscription.updated": handle_subscription_updated,
    "customer.subscription.deleted": handle_subscription_deleted,
    "invoice.payment_failed": handle_invoice_payment_failed,
    "invoice.payment_succeeded": handle_invoice_payment_succeeded,
}


async def dispatch_event(event: Event) -> bool:
    """Run the handler for ``event``; returns False for unhandled event types"""
    handler = EVENT_HANDLERS.get(event.get("type"))
    if handler is None:
        logger.info(f"Unhandled webhook event type: {event.get('type')}")
        return False
    await handler(event)
    return True
