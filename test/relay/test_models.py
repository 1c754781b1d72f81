import pytest

from relayer.errors import FailureKind, InvalidAuthorization
from relayer.models import Authorization, Operation, RelayStage, RequestRecord, RequestState

from relay_support import TARGET


def test_operation_accepts_wire_aliases():
    operation = Operation.from_mapping(
        {
            "from": "0x7e5f4552091a69125d5dfcb7b8c2659029395bdf",
            "to": TARGET.lower(),
            "data": "0xa9059cbb",
            "value": "0x10",
            "nonce": "3",
            "deadline": 1_900_000_000,
            "gasLimit": 90_000,
        }
    )

    assert operation.principal == "0x7E5F4552091A69125d5DfCb7b8C2659029395Bdf"
    assert operation.target == TARGET
    assert operation.payload == bytes.fromhex("a9059cbb")
    assert operation.selector == "0xa9059cbb"
    assert operation.value == 16
    assert operation.sequence == 3
    assert operation.gas == 90_000


@pytest.mark.parametrize(
    "field, value",
    [
        ("principal", "0x1234"),
        ("payload", "0xabc"),
        ("sequence", -1),
        ("value", True),
        ("valid_until", 2**256),
    ],
)
def test_operation_rejects_invalid_fields(make_operation, field, value):
    data = make_operation().to_dict()
    data[field] = value

    with pytest.raises(InvalidAuthorization):
        Operation.from_mapping(data)


def test_expiry_boundary(make_operation):
    operation = make_operation(valid_until=1_000)

    assert operation.is_expired(999) is False
    assert operation.is_expired(1_000) is True


def test_short_payload_has_no_selector(make_operation):
    assert make_operation(payload=b"\x01\x02").selector is None


def test_record_round_trips_through_dict(authorize):
    record = RequestRecord(request_id="0x01", authorization=authorize(), created_at=10.0, updated_at=10.0)
    record.advance(RelayStage.VERIFYING, now=11.0)
    record.fail(FailureKind.BAD_SIGNATURE, "signature recovered 0x0", now=12.0)

    restored = RequestRecord.from_dict(record.to_dict())

    assert restored == record
    assert restored.state is RequestState.FAILED
    assert restored.updated_at == 12.0


def test_terminal_record_cannot_advance(authorize):
    record = RequestRecord(request_id="0x01", authorization=authorize())
    record.fail(FailureKind.EXPIRED)

    assert record.state is RequestState.EXPIRED
    with pytest.raises(RuntimeError):
        record.advance(RelayStage.VERIFYING)


def test_authorization_requires_domain(authorize):
    data = authorize().to_dict()
    data.pop("domain")

    with pytest.raises(InvalidAuthorization):
        Authorization.from_mapping(data)
