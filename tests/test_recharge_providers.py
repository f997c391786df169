"""
Test Recharge Provider Clients
Response parsing and error typing for TAECEL and MST, without network access
"""

from unittest.mock import AsyncMock
from xml.sax.saxutils import escape

import pytest

from models import RechargeErrorCode, RechargeProduct
from services.recharge_providers import MstClient, TaecelClient, extract_folio
from utils.recharge_exceptions import ProviderFatalError, ProviderTransientError

from tests.recharge_test_foundation import make_candidate

PRODUCT = RechargeProduct("TEL010", 10.0, 7)


def soap_response(inner_xml: str, element: str = "return1") -> str:
    return (
        '<SOAP-ENV:Envelope xmlns:SOAP-ENV="http://schemas.xmlsoap.org/soap/envelope/" '
        'xmlns:ns1="http://recargas.red/ws/"><SOAP-ENV:Body><ns1:PaquetesResponse>'
        f'<{element}>{escape(inner_xml)}</{element}>'
        '</ns1:PaquetesResponse></SOAP-ENV:Body></SOAP-ENV:Envelope>'
    )


class TestExtractFolio:

    @pytest.mark.parametrize("payload,expected", [
        ({"Folio": "ABC123"}, "ABC123"),
        ({"folio": 998877}, "998877"),
        ({"TransID": "T-1"}, "T-1"),
        ({"data": {"transID": "nested"}}, "nested"),
        ({"response": {"Folio": ""}, "data": {"folio": "deep"}}, "deep"),
        ({"message": "ok"}, None),
        ("not a dict", None),
    ])
    def test_extract_folio(self, payload, expected):
        assert extract_folio(payload) == expected


class TestMstClient:

    def test_parse_result_reads_escaped_inner_xml(self):
        body = soap_response(
            "<Recarga><Resultado><Folio>MST-555</Folio><Saldo>$1,500.00</Saldo></Resultado></Recarga>"
        )
        assert MstClient.parse_result(body) == {"Folio": "MST-555", "Saldo": "$1,500.00"}

    def test_parse_result_accepts_resultado_element(self):
        body = soap_response("<Recarga><Error>Saldo insuficiente</Error></Recarga>", element="resultado")
        assert MstClient.parse_result(body) == {"Error": "Saldo insuficiente"}

    def test_unparseable_response_is_fatal(self):
        with pytest.raises(ProviderFatalError) as exc_info:
            MstClient.parse_result("<html>gateway error</html>")
        assert exc_info.value.error_code == RechargeErrorCode.MALFORMED_REQUEST

    def test_envelope_escapes_inner_request(self):
        client = MstClient(url="https://mst.invalid/ws", user="u", password="p&q")
        envelope = client._envelope("ObtenSaldo", {"Usuario": "u", "Passwd": "p&q"})

        assert "<ws:ObtenSaldo" in envelope
        assert "&lt;Recarga&gt;" in envelope
        assert "p&amp;amp;q" in envelope, "Values are escaped inside the escaped payload"

    @pytest.mark.asyncio
    async def test_charge_returns_folio(self):
        client = MstClient(url="https://mst.invalid/ws", user="u", password="p")
        client._call = AsyncMock(return_value={"Folio": "MST-777", "Cantidad": "10"})

        txn = await client.charge(make_candidate("5550000001"), PRODUCT)

        assert (txn.provider, txn.folio, txn.amount) == ("MST", "MST-777", 10.0)
        fields = client._call.await_args.args[1]
        assert fields == {"Telefono": "5550000001", "Carrier": "Telcel", "Monto": "TEL010"}

    @pytest.mark.asyncio
    async def test_charge_error_is_typed(self):
        client = MstClient(url="https://mst.invalid/ws", user="u", password="p")
        client._call = AsyncMock(return_value={"Error": "Saldo insuficiente"})

        with pytest.raises(ProviderTransientError) as exc_info:
            await client.charge(make_candidate(), PRODUCT)
        assert exc_info.value.error_code == RechargeErrorCode.INSUFFICIENT_BALANCE

    @pytest.mark.asyncio
    async def test_charge_without_folio_is_fatal(self):
        client = MstClient(url="https://mst.invalid/ws", user="u", password="p")
        client._call = AsyncMock(return_value={"Mensaje": "OK"})

        with pytest.raises(ProviderFatalError) as exc_info:
            await client.charge(make_candidate(), PRODUCT)
        assert exc_info.value.error_code == RechargeErrorCode.MISSING_FOLIO

    @pytest.mark.asyncio
    async def test_balance(self):
        client = MstClient(url="https://mst.invalid/ws", user="u", password="p")
        client._call = AsyncMock(return_value={"Saldo": "$2,345.50"})
        assert await client.get_balance() == 2345.50


class TestTaecelClient:

    def build(self, *responses):
        client = TaecelClient(base_url="https://taecel.invalid/api", key="k", nip="n")
        client.STATUS_CHECK_DELAY = 0
        client._post = AsyncMock(side_effect=list(responses))
        return client

    @pytest.mark.asyncio
    async def test_charge_confirms_status(self):
        client = self.build(
            {"success": True, "data": {"transID": "T-100"}},
            {"success": True, "data": {"TransID": "T-100", "Folio": "F-555", "Monto": "$10.00"}},
        )

        txn = await client.charge(make_candidate("5550000001"), PRODUCT)

        assert (txn.provider, txn.transaction_id, txn.folio, txn.amount) == ("TAECEL", "T-100", "F-555", 10.0)
        endpoints = [call.args[0] for call in client._post.await_args_list]
        assert endpoints == ["RequestTXN", "StatusTXN"]

    @pytest.mark.asyncio
    async def test_unresolved_status_requires_manual_review(self):
        outage = ProviderTransientError("TAECEL: timeout", RechargeErrorCode.PROVIDER_TIMEOUT, provider="TAECEL")
        client = self.build(
            {"success": True, "data": {"transID": "T-200"}},
            outage,
            {"success": False, "message": "en proceso"},
            outage,
        )

        with pytest.raises(ProviderFatalError) as exc_info:
            await client.charge(make_candidate("5550000001"), PRODUCT)

        assert exc_info.value.details["requires_manual_review"] is True
        assert exc_info.value.details["transID"] == "T-200"
        endpoints = [call.args[0] for call in client._post.await_args_list]
        assert endpoints.count("RequestTXN") == 1, "RequestTXN is never repeated once a transID exists"

    @pytest.mark.asyncio
    async def test_rejected_request_is_typed(self):
        client = self.build({"success": False, "message": "Número inválido"})

        with pytest.raises(ProviderFatalError) as exc_info:
            await client.charge(make_candidate(), PRODUCT)
        assert exc_info.value.error_code == RechargeErrorCode.INVALID_RECORD

    @pytest.mark.asyncio
    async def test_balance_reads_airtime_bag(self):
        client = self.build({"success": True, "data": [
            {"Bolsa": "Servicios", "Saldo": "5.00"},
            {"Bolsa": "Tiempo Aire", "Saldo": "1,234.56"},
        ]})
        assert await client.get_balance() == 1234.56

    def test_http_status_errors(self):
        client = TaecelClient(base_url="https://taecel.invalid/api", key="k", nip="n")
        assert isinstance(client._http_status_error(401), ProviderFatalError)
        assert client._http_status_error(401).error_code == RechargeErrorCode.AUTHENTICATION_FAILED
        assert isinstance(client._http_status_error(503), ProviderTransientError)
        assert isinstance(client._http_status_error(404), ProviderFatalError)
