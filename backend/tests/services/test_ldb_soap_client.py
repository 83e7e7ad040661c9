"""Tests for the OpenLDBWS SOAP strategy."""

from __future__ import annotations

from datetime import datetime, timezone

import httpx
import pytest

from railfeeds.models.rail import BoardQuery
from railfeeds.services.rail_errors import (
    FeedConnectionError,
    FeedDecodeError,
    NotConfiguredError,
    ServiceNotFoundError,
    StationNotFoundError,
)
from railfeeds.services.transport.ldb_soap import (
    LdbSoapClient,
    board_request_fields,
    build_envelope,
    parse_service_details,
    parse_station_board,
)

BOARD_RESPONSE = b"""<?xml version="1.0" encoding="utf-8"?>
<soap:Envelope xmlns:soap="http://schemas.xmlsoap.org/soap/envelope/">
  <soap:Body>
    <GetDepartureBoardResponse xmlns="http://thalesgroup.com/RTTI/2017-10-01/ldb/">
      <GetStationBoardResult xmlns:lt="http://thalesgroup.com/RTTI/2012-01-13/ldb/types"
                             xmlns:lt4="http://thalesgroup.com/RTTI/2015-11-27/ldb/types"
                             xmlns:lt5="http://thalesgroup.com/RTTI/2016-02-16/ldb/types">
        <lt4:generatedAt>2024-03-12T09:00:00.000+00:00</lt4:generatedAt>
        <lt4:locationName>London Kings Cross</lt4:locationName>
        <lt4:crs>KGX</lt4:crs>
        <lt4:nrccMessages>
          <lt:message>Engineering   works at <b>Peterborough</b></lt:message>
        </lt4:nrccMessages>
        <lt5:trainServices>
          <lt5:service>
            <lt4:std>09:30</lt4:std>
            <lt4:etd>09:34</lt4:etd>
            <lt4:platform>3</lt4:platform>
            <lt4:operator>London North Eastern Railway</lt4:operator>
            <lt4:operatorCode>GR</lt4:operatorCode>
            <lt4:serviceID>abc123==</lt4:serviceID>
            <lt5:origin><lt4:location><lt4:locationName>London Kings Cross</lt4:locationName><lt4:crs>KGX</lt4:crs></lt4:location></lt5:origin>
            <lt5:destination><lt4:location><lt4:locationName>Edinburgh</lt4:locationName><lt4:crs>EDB</lt4:crs></lt4:location></lt5:destination>
          </lt5:service>
          <lt5:service>
            <lt4:std>09:45</lt4:std>
            <lt4:isCancelled>true</lt4:isCancelled>
            <lt4:cancelReason>Train crew unavailable</lt4:cancelReason>
            <lt4:serviceID>def456==</lt4:serviceID>
          </lt5:service>
        </lt5:trainServices>
      </GetStationBoardResult>
    </GetDepartureBoardResponse>
  </soap:Body>
</soap:Envelope>"""

DETAILS_RESPONSE = b"""<?xml version="1.0" encoding="utf-8"?>
<soap:Envelope xmlns:soap="http://schemas.xmlsoap.org/soap/envelope/">
  <soap:Body>
    <GetServiceDetailsResponse xmlns="http://thalesgroup.com/RTTI/2017-10-01/ldb/">
      <GetServiceDetailsResult xmlns:lt4="http://thalesgroup.com/RTTI/2015-11-27/ldb/types">
        <lt4:locationName>Stevenage</lt4:locationName>
        <lt4:operator>LNER</lt4:operator>
        <lt4:previousCallingPoints>
          <lt4:callingPointList>
            <lt4:callingPoint><lt4:locationName>London Kings Cross</lt4:locationName><lt4:crs>KGX</lt4:crs><lt4:st>09:30</lt4:st><lt4:at>09:31</lt4:at></lt4:callingPoint>
          </lt4:callingPointList>
        </lt4:previousCallingPoints>
        <lt4:subsequentCallingPoints>
          <lt4:callingPointList>
            <lt4:callingPoint><lt4:locationName>Peterborough</lt4:locationName><lt4:crs>PBO</lt4:crs><lt4:st>10:45</lt4:st><lt4:et>On time</lt4:et></lt4:callingPoint>
            <lt4:callingPoint><lt4:locationName>York</lt4:locationName><lt4:crs>YRK</lt4:crs><lt4:st>11:40</lt4:st><lt4:isCancelled>true</lt4:isCancelled></lt4:callingPoint>
          </lt4:callingPointList>
        </lt4:subsequentCallingPoints>
      </GetServiceDetailsResult>
    </GetServiceDetailsResponse>
  </soap:Body>
</soap:Envelope>"""

FAULT_RESPONSE = b"""<?xml version="1.0" encoding="utf-8"?>
<soap:Envelope xmlns:soap="http://schemas.xmlsoap.org/soap/envelope/">
  <soap:Body>
    <soap:Fault><faultcode>soap:Client</faultcode><faultstring>Invalid token</faultstring></soap:Fault>
  </soap:Body>
</soap:Envelope>"""

FALLBACK = datetime(2024, 1, 1, tzinfo=timezone.utc)


class TestEnvelope:
    def test_fields_escaped_and_none_omitted(self):
        envelope = build_envelope("t<k>", "GetDepartureBoard", {"crs": "KGX", "filterCrs": None})

        assert "<typ:TokenValue>t&lt;k&gt;</typ:TokenValue>" in envelope
        assert "<ldb:crs>KGX</ldb:crs>" in envelope
        assert "filterCrs" not in envelope
        assert "<ldb:GetDepartureBoardRequest>" in envelope

    def test_filter_type_only_with_filter_station(self):
        plain = board_request_fields(BoardQuery(crs="KGX"))
        filtered = board_request_fields(BoardQuery(crs="KGX", filter_crs="PBO", filter_type="to"))

        assert plain["filterType"] is None
        assert filtered["filterType"] == "to"
        assert filtered["numRows"] == 10


class TestParsing:
    def test_station_board_parsed(self):
        board = parse_station_board(BOARD_RESPONSE, "KGX", FALLBACK)

        assert board.location_name == "London Kings Cross"
        assert board.generated_at == datetime(2024, 3, 12, 9, 0, tzinfo=timezone.utc)
        first, second = board.departures
        assert first.service_id == "abc123=="
        assert first.expected == "09:34"
        assert first.destination == "Edinburgh"
        assert first.destination_crs == "EDB"
        assert first.origin == "London Kings Cross"
        assert second.cancelled is True
        assert second.expected == "Cancelled"
        assert second.destination == "Unknown destination"
        assert board.messages[0].text == "Engineering works at Peterborough"

    def test_service_details_parsed(self):
        detail = parse_service_details(DETAILS_RESPONSE, "abc123==")

        assert detail.origin == ("London Kings Cross",)
        assert detail.destination == ("York",)
        assert detail.previous_calling_points[0].actual == "09:31"
        assert detail.subsequent_calling_points[1].cancelled is True

    def test_fault_raises_connection_error(self):
        with pytest.raises(FeedConnectionError, match="Invalid token"):
            parse_station_board(FAULT_RESPONSE, "KGX", FALLBACK)

    def test_missing_result(self):
        empty = b'<Envelope xmlns="http://schemas.xmlsoap.org/soap/envelope/"><Body/></Envelope>'

        with pytest.raises(StationNotFoundError):
            parse_station_board(empty, "KGX", FALLBACK)
        with pytest.raises(ServiceNotFoundError):
            parse_service_details(empty, "abc")

    def test_malformed_xml(self):
        with pytest.raises(FeedDecodeError):
            parse_station_board(b"<soap:Envelope", "KGX", FALLBACK)


class TestLdbSoapClient:
    @pytest.mark.asyncio
    async def test_board_request_posts_envelope(self, settings, clock):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, content=BOARD_RESPONSE)

        client = LdbSoapClient(
            settings, client=httpx.AsyncClient(transport=httpx.MockTransport(handler)), clock=clock
        )

        board = await client.fetch_board(BoardQuery(crs="KGX", num_rows=5))

        request = requests[0]
        assert request.method == "POST"
        assert request.headers["SOAPAction"].endswith('GetDepartureBoard"')
        assert b"<typ:TokenValue>token-123</typ:TokenValue>" in request.content
        assert b"<ldb:numRows>5</ldb:numRows>" in request.content
        assert len(board.departures) == 2

    @pytest.mark.asyncio
    async def test_http_500_fault_surfaces_fault_message(self, settings, clock):
        client = LdbSoapClient(
            settings,
            client=httpx.AsyncClient(
                transport=httpx.MockTransport(lambda r: httpx.Response(500, content=FAULT_RESPONSE))
            ),
            clock=clock,
        )

        with pytest.raises(FeedConnectionError, match="LDB SOAP fault"):
            await client.fetch_service_detail("abc")
        assert await client.test_connection() is False

    @pytest.mark.asyncio
    async def test_not_configured(self, bare_settings):
        client = LdbSoapClient(bare_settings)

        with pytest.raises(NotConfiguredError):
            await client.fetch_board(BoardQuery(crs="KGX"))
        assert await client.test_connection() is False
