"""
Payment transaction records for add-on purchases, renewals and refunds.

A transaction row is written before the payment gateway is called, so an
attempt is recorded even when the charge fails or the process dies mid-call.
"""

import time
import uuid
from decimal import Decimal

from django.core.serializers.json import DjangoJSONEncoder
from django.db import models
from django.utils import timezone
from django.utils.crypto import get_random_string

CODE_CHARS = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"


def generate_transaction_id():
    return f"TXN-{int(time.time() * 1000)}-{get_random_string(6, CODE_CHARS)}"


def generate_invoice_number(now=None):
    now = now or timezone.now()
    return f"INV-{now:%Y%m%d}-{get_random_string(4, CODE_CHARS)}"


class AddOnTransaction(models.Model):
    """
    One payment attempt (or refund) for an add-on.
    """

    # Transaction types
    TYPE_PURCHASE = "purchase"
    TYPE_RENEWAL = "renewal"
    TYPE_UPGRADE = "upgrade"
    TYPE_DOWNGRADE = "downgrade"
    TYPE_REFUND = "refund"
    TYPE_CREDIT = "credit"
    TYPE_ADJUSTMENT = "adjustment"

    TYPE_CHOICES = [
        (TYPE_PURCHASE, "Purchase"),
        (TYPE_RENEWAL, "Renewal"),
        (TYPE_UPGRADE, "Upgrade"),
        (TYPE_DOWNGRADE, "Downgrade"),
        (TYPE_REFUND, "Refund"),
        (TYPE_CREDIT, "Credit"),
        (TYPE_ADJUSTMENT, "Adjustment"),
    ]

    # Status choices
    STATUS_PENDING = "pending"
    STATUS_PROCESSING = "processing"
    STATUS_COMPLETED = "completed"
    STATUS_FAILED = "failed"
    STATUS_CANCELLED = "cancelled"
    STATUS_REFUNDED = "refunded"

    STATUS_CHOICES = [
        (STATUS_PENDING, "Pending"),
        (STATUS_PROCESSING, "Processing"),
        (STATUS_COMPLETED, "Completed"),
        (STATUS_FAILED, "Failed"),
        (STATUS_CANCELLED, "Cancelled"),
        (STATUS_REFUNDED, "Refunded"),
    ]

    # Source choices
    SOURCE_WEB = "web"
    SOURCE_ADMIN = "admin"
    SOURCE_API = "api"
    SOURCE_AUTO_RENEWAL = "auto_renewal"
    SOURCE_WEBHOOK = "webhook"

    SOURCE_CHOICES = [
        (SOURCE_WEB, "Web"),
        (SOURCE_ADMIN, "Admin"),
        (SOURCE_API, "API"),
        (SOURCE_AUTO_RENEWAL, "Auto Renewal"),
        (SOURCE_WEBHOOK, "Webhook"),
    ]

    # Line item types
    LINE_ADDON = "addon"
    LINE_DISCOUNT = "discount"
    LINE_TAX = "tax"
    LINE_PRORATION = "proration"
    LINE_CREDIT = "credit"
    LINE_REFUND = "refund"

    LINE_ITEM_TYPES = (LINE_ADDON, LINE_DISCOUNT, LINE_TAX, LINE_PRORATION, LINE_CREDIT, LINE_REFUND)

    id = models.UUIDField(
        primary_key=True,
        default=uuid.uuid4,
        editable=False,
        help_text="Unique identifier for the transaction",
    )

    transaction_id = models.CharField(
        max_length=64,
        unique=True,
        default=generate_transaction_id,
        help_text="Correlation id carried in gateway metadata",
    )

    invoice_number = models.CharField(
        max_length=32,
        unique=True,
        null=True,
        blank=True,
        help_text="Invoice number, assigned when the transaction completes",
    )

    tenant = models.ForeignKey(
        "core.Tenant",
        on_delete=models.CASCADE,
        related_name="addon_transactions",
        help_text="Tenant being charged",
    )

    addon = models.ForeignKey(
        "addons.AddOn",
        on_delete=models.PROTECT,
        related_name="transactions",
        help_text="Catalog add-on being paid for",
    )

    tenant_addon = models.ForeignKey(
        "addons.TenantAddOn",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="transactions",
        help_text="Add-on instance being paid for",
    )

    type = models.CharField(max_length=20, choices=TYPE_CHOICES, help_text="Transaction type")

    status = models.CharField(
        max_length=20,
        choices=STATUS_CHOICES,
        default=STATUS_PENDING,
        help_text="Transaction status",
    )

    # Amounts
    subtotal = models.DecimalField(max_digits=12, decimal_places=2, help_text="Amount before tax")

    tax = models.DecimalField(
        max_digits=12, decimal_places=2, default=Decimal("0"), help_text="Tax amount"
    )

    discount = models.DecimalField(
        max_digits=12, decimal_places=2, default=Decimal("0"), help_text="Discount amount"
    )

    total = models.DecimalField(max_digits=12, decimal_places=2, help_text="Amount charged")

    currency = models.CharField(max_length=3, default="INR", help_text="ISO currency code")

    line_items = models.JSONField(
        default=list,
        blank=True,
        encoder=DjangoJSONEncoder,
        help_text="Line items: [{type, description, quantity, unit_price, amount}]",
    )

    # Payment details
    payment_method = models.CharField(max_length=50, blank=True, help_text="Payment method")

    gateway = models.CharField(max_length=50, default="stripe", help_text="Payment gateway")

    gateway_transaction_id = models.CharField(
        max_length=255, blank=True, help_text="Gateway reference (PaymentIntent/refund id)"
    )

    failure_reason = models.TextField(blank=True, help_text="Why the payment failed")

    retry_count = models.PositiveIntegerField(default=0, help_text="Failed attempts recorded")

    refunded_amount = models.DecimalField(
        max_digits=12, decimal_places=2, default=Decimal("0"), help_text="Total refunded"
    )

    # Period and origin
    billing_period_start = models.DateTimeField(null=True, blank=True, help_text="Period start")

    billing_period_end = models.DateTimeField(null=True, blank=True, help_text="Period end")

    source = models.CharField(
        max_length=20, choices=SOURCE_CHOICES, default=SOURCE_WEB, help_text="Origin"
    )

    metadata = models.JSONField(
        default=dict, blank=True, encoder=DjangoJSONEncoder, help_text="Extra metadata"
    )

    processed_at = models.DateTimeField(null=True, blank=True, help_text="When completed")

    created_at = models.DateTimeField(
        auto_now_add=True, help_text="Timestamp when the transaction was created"
    )

    updated_at = models.DateTimeField(
        auto_now=True, help_text="Timestamp when the transaction was last updated"
    )

    class Meta:
        db_table = "addon_transactions"
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["tenant", "-created_at"], name="addon_txn_tenant_idx"),
            models.Index(fields=["type", "status"], name="addon_txn_type_status_idx"),
            models.Index(fields=["gateway_transaction_id"], name="addon_txn_gateway_idx"),
        ]
        verbose_name = "Add-on Transaction"
        verbose_name_plural = "Add-on Transactions"

    def __str__(self):
        return f"{self.transaction_id} ({self.type}, {self.status})"

    def is_completed(self):
        return self.status == self.STATUS_COMPLETED

    def is_pending(self):
        return self.status in (self.STATUS_PENDING, self.STATUS_PROCESSING)

    def add_line_item(self, item_type, description, amount, quantity=1, unit_price=None):
        """Append a line item (not saved)."""
        if item_type not in self.LINE_ITEM_TYPES:
            raise ValueError(f"Unknown line item type: {item_type}")
        self.line_items = list(self.line_items or []) + [
            {
                "type": item_type,
                "description": description,
                "quantity": quantity,
                "unit_price": unit_price if unit_price is not None else amount,
                "amount": amount,
            }
        ]

    def mark_processing(self):
        self.status = self.STATUS_PROCESSING
        self.save(update_fields=["status", "updated_at"])

    def mark_completed(self, gateway_transaction_id="", now=None):
        """Mark the transaction paid and assign an invoice number."""
        now = now or timezone.now()
        self.status = self.STATUS_COMPLETED
        self.processed_at = now
        if gateway_transaction_id:
            self.gateway_transaction_id = gateway_transaction_id
        if not self.invoice_number:
            self.invoice_number = generate_invoice_number(now)
        self.save(
            update_fields=[
                "status",
                "processed_at",
                "gateway_transaction_id",
                "invoice_number",
                "updated_at",
            ]
        )

    def mark_failed(self, reason):
        """Mark the transaction failed and record why."""
        self.status = self.STATUS_FAILED
        self.failure_reason = str(reason)
        self.retry_count += 1
        self.save(update_fields=["status", "failure_reason", "retry_count", "updated_at"])

    def mark_refunded(self, amount, refund_reference=""):
        """Record a refund against this transaction."""
        self.refunded_amount = (self.refunded_amount or Decimal("0")) + amount
        if self.refunded_amount >= self.total:
            self.status = self.STATUS_REFUNDED
        self.metadata = {**(self.metadata or {}), "last_refund_reference": refund_reference}
        self.save(update_fields=["refunded_amount", "status", "metadata", "updated_at"])
