# ============================================================
# gateway.py — Client Invoice Gateway (API invoice Xendit)
# ------------------------------------------------------------
# POST /v2/invoices en basic auth (clé API, mot de passe vide).
# La référence externe "rental_<id>" sert aussi de clé
# d'idempotence : le retry unique sur timeout ou 5xx ne peut pas
# ouvrir deux factures. Les échecs sont renvoyés dans un
# InvoiceResult, jamais levés.
# ============================================================
from typing import List, Optional
import httpx
from sqlmodel import SQLModel

from locker_rental import config

RETRYABLE = ("timeout", "transport", "server_error")


class InvoiceHandle(SQLModel):
    id: str
    amount: int
    currency: str
    status: str
    invoice_url: Optional[str] = None


class InvoiceResult(SQLModel):
    ok: bool
    invoice: Optional[InvoiceHandle] = None
    failure: Optional[str] = None    # timeout | transport | server_error | rejected | bad_response | not_configured
    detail: str = ""


class InvoiceGateway:
    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None,
                 timeout: Optional[float] = None, client: Optional[httpx.Client] = None,
                 attempts: int = 2):
        self.api_key = config.XENDIT_API_KEY if api_key is None else api_key
        self.base_url = (base_url or config.XENDIT_BASE_URL).rstrip("/")
        self.timeout = timeout or config.GATEWAY_TIMEOUT_SECONDS
        self.client = client
        self.attempts = attempts

    def issue_invoice(self, amount: int, external_ref: str, payer_email: str,
                      description: str, currency: Optional[str] = None,
                      payment_methods: Optional[List[str]] = None,
                      duration_seconds: Optional[int] = None) -> InvoiceResult:
        if not self.api_key:
            return InvoiceResult(ok=False, failure="not_configured", detail="XENDIT_API_KEY is empty")

        body = {
            "external_id": external_ref,
            "amount": amount,
            "payer_email": payer_email,
            "description": description,
            "success_redirect_url": config.SUCCESS_REDIRECT_URL,
            "failure_redirect_url": config.FAILURE_REDIRECT_URL,
            "currency": currency or config.INVOICE_CURRENCY,
            "payment_methods": payment_methods or config.INVOICE_PAYMENT_METHODS,
            "invoice_duration": duration_seconds or config.INVOICE_DURATION_SECONDS,
        }

        result = None
        for attempt in range(1, self.attempts + 1):
            result = self._post(body, external_ref)
            if result.ok or result.failure not in RETRYABLE:
                return result
            print(f"[gateway] attempt {attempt} for {external_ref} failed: {result.failure} {result.detail}", flush=True)
        return result

    def _post(self, body: dict, external_ref: str) -> InvoiceResult:
        url = f"{self.base_url}/v2/invoices"
        headers = {"Idempotency-key": external_ref}
        try:
            if self.client is not None:
                r = self.client.post(url, json=body, auth=(self.api_key, ""), headers=headers, timeout=self.timeout)
            else:
                r = httpx.post(url, json=body, auth=(self.api_key, ""), headers=headers, timeout=self.timeout)
        except httpx.TimeoutException as e:
            return InvoiceResult(ok=False, failure="timeout", detail=str(e))
        except httpx.TransportError as e:
            return InvoiceResult(ok=False, failure="transport", detail=str(e))

        if r.status_code >= 500:
            return InvoiceResult(ok=False, failure="server_error", detail=f"{r.status_code} {r.text[:200]}")
        if r.status_code >= 400:
            return InvoiceResult(ok=False, failure="rejected", detail=f"{r.status_code} {r.text[:200]}")

        try:
            data = r.json()
            invoice = InvoiceHandle(
                id=str(data["id"]),
                amount=int(data["amount"]),
                currency=data["currency"],
                status=data["status"],
                invoice_url=data.get("invoice_url"),
            )
        except (ValueError, KeyError, TypeError) as e:
            return InvoiceResult(ok=False, failure="bad_response", detail=repr(e))
        return InvoiceResult(ok=True, invoice=invoice)
