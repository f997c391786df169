"""
Recharge Provider Clients
TAECEL (form-encoded REST) and MST (SOAP) adapters sharing one error mapping.

Each client turns provider failures into typed recharge errors at the call site
so the retry engine never has to inspect message text.
"""

import asyncio
import logging
import xml.etree.ElementTree as ET
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional
from xml.sax.saxutils import escape

import aiohttp

from config import Config
from models import ProviderTransaction, RechargeCandidate, RechargeErrorCode, RechargeProduct, utcnow
from services.recharge_error_classifier import RechargeErrorClassifier, map_provider_message
from utils.recharge_exceptions import ProviderFatalError, ProviderTransientError

logger = logging.getLogger(__name__)

FOLIO_KEYS = ("folio", "Folio", "transID", "TransID", "transId")


def extract_folio(payload: Dict[str, Any]) -> Optional[str]:
    """Find the provider receipt number in a response payload"""
    if not isinstance(payload, dict):
        return None
    for key in FOLIO_KEYS:
        value = payload.get(key)
        if value not in (None, ""):
            return str(value)
    for nested_key in ("response", "data"):
        nested = payload.get(nested_key)
        if isinstance(nested, dict):
            folio = extract_folio(nested)
            if folio:
                return folio
    return None


def _parse_amount(value: Any) -> float:
    if value is None:
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    cleaned = str(value).replace("$", "").replace(",", "").strip()
    try:
        return float(cleaned) if cleaned else 0.0
    except ValueError:
        return 0.0


def _local_name(tag: str) -> str:
    return tag.rsplit('}', 1)[-1].split(':')[-1]


class RechargeProviderClient(ABC):
    """
    Base class for recharge providers

    Subclasses implement get_balance() and charge(); both raise
    ProviderTransientError or ProviderFatalError with a typed code.
    """

    def __init__(self, name: str, timeout: float = None):
        self.name = name
        self.timeout = timeout or Config.WEBSERVICE_TIMEOUT

    @abstractmethod
    async def get_balance(self) -> float:
        """Current balance available for charges"""

    @abstractmethod
    async def charge(self, candidate: RechargeCandidate, product: RechargeProduct) -> ProviderTransaction:
        """Charge one candidate; non-idempotent on the provider side"""

    def _client_timeout(self) -> aiohttp.ClientTimeout:
        return aiohttp.ClientTimeout(total=self.timeout)

    def _map_provider_error(self, message: str) -> RechargeErrorCode:
        return map_provider_message(message)

    def _provider_error(self, message: str, details: Dict[str, Any] = None):
        """Build the typed error for a provider-reported failure message"""
        code = self._map_provider_error(message)
        if RechargeErrorClassifier.RETRY_CONFIG[code]["retryable"]:
            return ProviderTransientError(f"{self.name}: {message}", code, provider=self.name, details=details)
        return ProviderFatalError(f"{self.name}: {message}", code, provider=self.name, details=details)

    def _http_status_error(self, status: int, details: Dict[str, Any] = None):
        if status in (401, 403):
            return ProviderFatalError(
                f"{self.name}: access denied (HTTP {status}), check credentials",
                RechargeErrorCode.AUTHENTICATION_FAILED, provider=self.name, details=details,
            )
        if status == 429 or status >= 500:
            return ProviderTransientError(
                f"{self.name}: HTTP {status}", RechargeErrorCode.PROVIDER_UNAVAILABLE,
                provider=self.name, details=details,
            )
        return ProviderFatalError(
            f"{self.name}: HTTP {status}", RechargeErrorCode.MALFORMED_REQUEST,
            provider=self.name, details=details,
        )

    def _transport_error(self, error: Exception):
        if isinstance(error, asyncio.TimeoutError):
            return ProviderTransientError(
                f"{self.name}: timeout after {self.timeout}s", RechargeErrorCode.PROVIDER_TIMEOUT, provider=self.name
            )
        return ProviderTransientError(
            f"{self.name}: connection failed: {error}", RechargeErrorCode.CONNECTION_RESET, provider=self.name
        )


class TaecelClient(RechargeProviderClient):
    """TAECEL REST API: getBalance, RequestTXN then StatusTXN"""

    BALANCE_BAG = "Tiempo Aire"
    STATUS_CHECK_ATTEMPTS = 3
    STATUS_CHECK_DELAY = 2.0

    def __init__(self, base_url: str = None, key: str = None, nip: str = None, timeout: float = None):
        super().__init__("TAECEL", timeout)
        self.base_url = (base_url or Config.TAECEL_URL).rstrip('/')
        self.key = key if key is not None else Config.TAECEL_KEY
        self.nip = nip if nip is not None else Config.TAECEL_NIP

    async def _post(self, endpoint: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        form = {"key": self.key or "", "nip": self.nip or "", **payload}
        headers = {"User-Agent": "Recharge-Engine/1.0"}
        try:
            async with aiohttp.ClientSession(timeout=self._client_timeout(), headers=headers) as session:
                async with session.post(f"{self.base_url}/{endpoint}", data=form) as response:
                    if response.status != 200:
                        raise self._http_status_error(response.status, {"endpoint": endpoint})
                    body = await response.json(content_type=None)
        except (asyncio.TimeoutError, aiohttp.ClientConnectionError) as e:
            raise self._transport_error(e) from e

        if not body:
            raise ProviderTransientError(
                f"TAECEL: empty response from {endpoint}", RechargeErrorCode.PROVIDER_UNAVAILABLE, provider=self.name
            )
        return body

    async def get_balance(self) -> float:
        body = await self._post("getBalance", {})
        if not body.get("success"):
            raise self._provider_error(body.get("message") or "unknown getBalance error")

        for bag in body.get("data") or []:
            if bag.get("Bolsa") == self.BALANCE_BAG:
                return _parse_amount(bag.get("Saldo"))
        raise ProviderFatalError(
            f"TAECEL: balance bag '{self.BALANCE_BAG}' missing", RechargeErrorCode.MALFORMED_REQUEST, provider=self.name
        )

    async def charge(self, candidate: RechargeCandidate, product: RechargeProduct) -> ProviderTransaction:
        request = await self._post("RequestTXN", {"producto": product.code, "referencia": candidate.sim})
        if not request.get("success"):
            raise self._provider_error(request.get("message") or "RequestTXN rejected", {"sim": candidate.sim})

        trans_id = str((request.get("data") or {}).get("transID") or "")
        if not trans_id:
            raise ProviderFatalError(
                "TAECEL: RequestTXN returned no transID", RechargeErrorCode.MISSING_FOLIO, provider=self.name
            )

        logger.info(f"🔵 TAECEL_TXN_REQUESTED: sim={candidate.sim} transID={trans_id}")
        status_data = await self._confirm_status(trans_id, candidate)

        folio = extract_folio(status_data) or trans_id
        return ProviderTransaction(
            provider=self.name,
            transaction_id=str(status_data.get("TransID") or trans_id),
            folio=folio,
            amount=_parse_amount(status_data.get("Monto")) or product.amount,
            raw_payload=status_data,
            timestamp=utcnow(),
        )

    async def _confirm_status(self, trans_id: str, candidate: RechargeCandidate) -> Dict[str, Any]:
        """
        StatusTXN is idempotent, RequestTXN is not: once a transID exists the
        charge must never be re-requested, so status failures become fatal.
        """
        last_error = None
        for attempt in range(1, self.STATUS_CHECK_ATTEMPTS + 1):
            try:
                status = await self._post("StatusTXN", {"transID": trans_id})
                if status.get("success"):
                    return dict(status.get("data") or {})
                last_error = status.get("message") or "StatusTXN rejected"
            except ProviderTransientError as e:
                last_error = str(e)
            if attempt < self.STATUS_CHECK_ATTEMPTS:
                await asyncio.sleep(self.STATUS_CHECK_DELAY)

        raise ProviderFatalError(
            f"TAECEL: StatusTXN unresolved for transID {trans_id}: {last_error}",
            RechargeErrorCode.UNKNOWN,
            provider=self.name,
            details={"transID": trans_id, "sim": candidate.sim, "requires_manual_review": True},
        )


class MstClient(RechargeProviderClient):
    """MST SOAP service: ObtenSaldo for balance, Paquetes/Recarga for charges"""

    SOAP_ACTION_BASE = "https://ventatelcel.com/ws/index.php/"
    ENVELOPE = (
        '<soapenv:Envelope xmlns:xsi="http://www.w3.org/2001/XMLSchema-instance" '
        'xmlns:xsd="http://www.w3.org/2001/XMLSchema" '
        'xmlns:soapenv="http://schemas.xmlsoap.org/soap/envelope/" xmlns:ws="http://recargas.red/ws/">'
        '<soapenv:Header/><soapenv:Body>'
        '<ws:{action} soapenv:encodingStyle="http://schemas.xmlsoap.org/soap/encoding/">'
        '<cadena xsi:type="xsd:string">{cadena}</cadena>'
        '</ws:{action}></soapenv:Body></soapenv:Envelope>'
    )

    def __init__(self, url: str = None, user: str = None, password: str = None,
                 recharge_type: str = "Paquetes", timeout: float = None):
        super().__init__("MST", timeout)
        self.url = url or Config.MST_URL
        self.user = user if user is not None else Config.MST_USER
        self.password = password if password is not None else Config.MST_PASSWORD
        self.recharge_type = recharge_type

    def _envelope(self, action: str, fields: Dict[str, Any]) -> str:
        inner = "".join(f"<{k}>{escape(str(v))}</{k}>" for k, v in fields.items())
        # The inner XML travels as an escaped string inside <cadena>
        cadena = escape(f"<Recarga>{inner}</Recarga>")
        return self.ENVELOPE.format(action=action, cadena=cadena)

    async def _call(self, action: str, fields: Dict[str, Any]) -> Dict[str, str]:
        headers = {
            "Content-Type": "text/xml;charset=UTF-8",
            "SOAPAction": self.SOAP_ACTION_BASE + action,
        }
        body = self._envelope(action, {"Usuario": self.user or "", "Passwd": self.password or "", **fields})
        try:
            async with aiohttp.ClientSession(timeout=self._client_timeout()) as session:
                async with session.post(self.url, data=body.encode("utf-8"), headers=headers) as response:
                    if response.status != 200:
                        raise self._http_status_error(response.status, {"action": action})
                    text = await response.text()
        except (asyncio.TimeoutError, aiohttp.ClientConnectionError) as e:
            raise self._transport_error(e) from e
        return self.parse_result(text)

    @classmethod
    def parse_result(cls, soap_body: str) -> Dict[str, str]:
        """Extract the <Recarga><Resultado> fields from a SOAP response"""
        try:
            envelope = ET.fromstring(soap_body)
            inner_text = None
            for element in envelope.iter():
                if _local_name(element.tag) in ("resultado", "return1") and element.text:
                    inner_text = element.text
                    break
            if inner_text is None:
                raise ValueError("no result element in SOAP body")
            recarga = ET.fromstring(inner_text.strip())
        except (ET.ParseError, ValueError) as e:
            raise ProviderFatalError(
                f"MST: unparseable response: {e}", RechargeErrorCode.MALFORMED_REQUEST, provider="MST"
            ) from e

        resultado = recarga.find("Resultado")
        source = resultado if resultado is not None else recarga
        return {_local_name(child.tag): (child.text or "").strip() for child in source}

    async def get_balance(self) -> float:
        result = await self._call("ObtenSaldo", {})
        if "Error" in result:
            raise self._provider_error(result["Error"])
        return _parse_amount(result.get("Saldo"))

    async def charge(self, candidate: RechargeCandidate, product: RechargeProduct) -> ProviderTransaction:
        logger.info(f"🟡 MST_CHARGE_REQUESTED: {self.recharge_type} sim={candidate.sim} code={product.code}")
        result = await self._call(self.recharge_type, {
            "Telefono": candidate.sim,
            "Carrier": "Telcel",
            "Monto": product.code,
        })
        if "Error" in result:
            raise self._provider_error(result["Error"], {"sim": candidate.sim})

        folio = extract_folio(result)
        if not folio:
            raise ProviderFatalError(
                "MST: response has no Folio", RechargeErrorCode.MISSING_FOLIO,
                provider=self.name, details={"sim": candidate.sim, "response": result},
            )
        return ProviderTransaction(
            provider=self.name,
            transaction_id=folio,
            folio=folio,
            amount=_parse_amount(result.get("Cantidad")) or product.amount,
            raw_payload=result,
            timestamp=utcnow(),
        )


def build_default_providers() -> Dict[str, RechargeProviderClient]:
    return {"TAECEL": TaecelClient(), "MST": MstClient()}
