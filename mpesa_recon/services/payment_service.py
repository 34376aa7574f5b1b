"""Payment Service - STK Push and B2C initiation through Daraja."""

import logging
from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from mpesa_recon.core.config import Settings, get_settings
from mpesa_recon.core.exceptions import GatewayError, ValidationError
from mpesa_recon.gateways.base import GatewayResult
from mpesa_recon.gateways.mpesa import MpesaClient
from mpesa_recon.models.audit_log import AuditAction
from mpesa_recon.models.transaction import TransactionType
from mpesa_recon.schemas.mpesa import B2CResponse, StkPushResponse
from mpesa_recon.schemas.transaction import TransactionDraft
from mpesa_recon.services.transaction_store import TransactionStore
from mpesa_recon.utils.phone import is_valid_phone, normalize_phone

logger = logging.getLogger(__name__)


class PaymentService:
    """Service for initiating payments.

    Validation happens before any gateway call or store write. A rejected
    initiation leaves no Transaction row; its raw request and response are
    kept in the audit log instead.
    """

    def __init__(
        self,
        db: AsyncSession,
        mpesa: MpesaClient,
        settings: Settings | None = None,
    ):
        self.db = db
        self.mpesa = mpesa
        self.settings = settings or get_settings()
        self.store = TransactionStore(db, timezone=self.settings.timezone)

    # =========================================================================
    # Validation
    # =========================================================================

    @staticmethod
    def _parse_amount(amount: Any) -> Decimal:
        try:
            value = Decimal(str(amount))
        except (InvalidOperation, ValueError) as e:
            raise ValidationError("Amount must be a number", {"amount": str(amount)}) from e
        if not value.is_finite():
            raise ValidationError("Amount must be a number", {"amount": str(amount)})
        return value

    def _validate_amount(
        self, amount: Any, minimum: Decimal | None, maximum: Decimal | None
    ) -> Decimal:
        value = self._parse_amount(amount)
        if value <= 0:
            raise ValidationError("Amount must be greater than 0", {"amount": str(value)})
        if value != value.to_integral_value():
            # Daraja only accepts whole shillings
            raise ValidationError("Amount must be a whole number", {"amount": str(value)})
        if minimum is not None and value < minimum:
            raise ValidationError(
                f"Amount must be at least {minimum}", {"amount": str(value), "min": str(minimum)}
            )
        if maximum is not None and value > maximum:
            raise ValidationError(
                f"Amount must not exceed {maximum}", {"amount": str(value), "max": str(maximum)}
            )
        return value

    @staticmethod
    def _validate_phone(phone_number: str) -> str:
        normalized = normalize_phone(phone_number or "")
        if not is_valid_phone(normalized):
            raise ValidationError(
                "Invalid phone number format. Use 2547XXXXXXXX",
                {"phone_number": phone_number},
            )
        return normalized

    @staticmethod
    def _validate_length(name: str, value: str | None, minimum: int, maximum: int) -> None:
        length = len(value or "")
        if not minimum <= length <= maximum:
            raise ValidationError(
                f"{name} must be between {minimum} and {maximum} characters",
                {"field": name, "length": length},
            )

    # =========================================================================
    # STK Push
    # =========================================================================

    async def initiate_stk_push(
        self,
        amount: Any,
        phone_number: str,
        account_reference: str,
        transaction_desc: str,
        callback_url: str | None = None,
    ) -> StkPushResponse:
        """Prompt a customer to pay via STK Push.

        Args:
            amount: Whole-shilling amount, > 0 and within the configured bounds
            phone_number: Customer phone; '07..', '+2547..' and '2547..' accepted
            account_reference: 1-12 characters
            transaction_desc: 1-13 characters
            callback_url: Overrides the configured callback URL

        Returns:
            StkPushResponse with the stored transaction id and tracking ids

        Raises:
            ValidationError: Bad input (nothing sent, nothing stored)
            GatewayError: Daraja rejected the request or could not be reached
        """
        value = self._validate_amount(
            amount, self.settings.stk_push_min_amount, self.settings.stk_push_max_amount
        )
        phone = self._validate_phone(phone_number)
        self._validate_length("account_reference", account_reference, 1, 12)
        self._validate_length("transaction_desc", transaction_desc, 1, 13)

        request = self.mpesa.build_stk_push_request(
            amount=value,
            phone_number=phone,
            account_reference=account_reference,
            transaction_desc=transaction_desc,
            callback_url=callback_url or self.settings.mpesa_callback_url,
        )
        result = await self.mpesa.stk_push(request)

        checkout_request_id = result.value.get("CheckoutRequestID") if result.ok else None
        if not result.ok or not checkout_request_id:
            await self._record_initiation_failure(TransactionType.STK_PUSH, request, result)
            raise GatewayError(
                result.detail or "M-Pesa response did not include a CheckoutRequestID",
                kind=result.kind.value if result.kind else None,
                details={"status_code": result.status_code},
            )

        transaction = await self.store.create(
            TransactionDraft(
                amount=value,
                phone_number=phone,
                transaction_type=TransactionType.STK_PUSH,
                account_reference=account_reference,
                checkout_request_id=checkout_request_id,
                merchant_request_id=result.value.get("MerchantRequestID"),
                request_payload=self._redact(request),
                response_payload=result.value,
            )
        )
        await self.db.commit()

        logger.info(
            f"STK push initiated: transaction={transaction.id} "
            f"checkout={checkout_request_id} amount={value}"
        )
        return StkPushResponse(
            transaction_id=transaction.id,
            checkout_request_id=checkout_request_id,
            merchant_request_id=transaction.merchant_request_id,
            response_description=result.value.get("ResponseDescription"),
            customer_message=result.value.get("CustomerMessage"),
        )

    async def query_stk_status(self, checkout_request_id: str) -> dict[str, Any]:
        """Ask Daraja for the status of an STK Push. Stores nothing."""
        if not checkout_request_id:
            raise ValidationError("checkout_request_id is required")
        result = await self.mpesa.query_stk_status(checkout_request_id)
        if not result.ok:
            raise GatewayError(
                result.detail or "M-Pesa status query failed",
                kind=result.kind.value if result.kind else None,
                details={"status_code": result.status_code},
            )
        return result.value

    # =========================================================================
    # B2C
    # =========================================================================

    async def initiate_b2c(
        self,
        amount: Any,
        phone_number: str,
        remarks: str,
        occasion: str | None = None,
    ) -> B2CResponse:
        """Pay a customer from the business shortcode.

        Raises:
            ValidationError: Bad input
            GatewayError: Daraja rejected the request or could not be reached
        """
        value = self._validate_amount(
            amount, self.settings.b2c_min_amount, self.settings.b2c_max_amount
        )
        phone = self._validate_phone(phone_number)
        self._validate_length("remarks", remarks, 1, 100)
        self._validate_length("occasion", occasion, 0, 100)

        request = self.mpesa.build_b2c_request(
            amount=value,
            phone_number=phone,
            remarks=remarks,
            occasion=occasion or "",
            result_url=self.settings.mpesa_result_url,
            queue_timeout_url=self.settings.mpesa_queue_timeout_url,
        )
        result = await self.mpesa.b2c_payment(request)

        conversation_id = result.value.get("ConversationID") if result.ok else None
        if not result.ok or not conversation_id:
            await self._record_initiation_failure(TransactionType.B2C, request, result)
            raise GatewayError(
                result.detail or "M-Pesa response did not include a ConversationID",
                kind=result.kind.value if result.kind else None,
                details={"status_code": result.status_code},
            )

        transaction = await self.store.create(
            TransactionDraft(
                amount=value,
                phone_number=phone,
                transaction_type=TransactionType.B2C,
                conversation_id=conversation_id,
                originator_conversation_id=result.value.get("OriginatorConversationID"),
                request_payload=self._redact(request),
                response_payload=result.value,
            )
        )
        await self.db.commit()

        logger.info(
            f"B2C payment initiated: transaction={transaction.id} "
            f"conversation={conversation_id} amount={value}"
        )
        return B2CResponse(
            transaction_id=transaction.id,
            conversation_id=conversation_id,
            originator_conversation_id=transaction.originator_conversation_id,
            response_description=result.value.get("ResponseDescription"),
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    @staticmethod
    def _redact(request: dict[str, Any]) -> dict[str, Any]:
        """Drop credentials from a request before it is stored."""
        redacted = dict(request)
        for key in ("Password", "SecurityCredential"):
            if key in redacted:
                redacted[key] = "***"
        return redacted

    async def _record_initiation_failure(
        self,
        transaction_type: TransactionType,
        request: dict[str, Any],
        result: GatewayResult,
    ) -> None:
        logger.error(
            f"{transaction_type.value} initiation failed: "
            f"kind={result.kind.value if result.kind else None} detail={result.detail}"
        )
        await self.store.record_event(
            AuditAction.INITIATION_FAILED,
            f"{transaction_type.value} initiation failed: {result.detail}",
            values={
                "request_payload": self._redact(request),
                "response_payload": result.value,
                "status_code": result.status_code,
                "kind": result.kind.value if result.kind else None,
            },
        )
        await self.db.commit()
