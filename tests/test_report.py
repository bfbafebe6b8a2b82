import pytest

from gatewayproxy.report import PropertyKind, StatReporter, StatStatus


@pytest.fixture
def reporter():
    return StatReporter(application="Base", server_name="GatewayServer", local_ip="10.0.0.1")


@pytest.mark.parametrize(
    "ret, status",
    [(-7, StatStatus.TIMEOUT), (0, StatStatus.SUCC), (-1, StatStatus.EXCE), (3, StatStatus.EXCE)],
)
def test_stat_status_from_ret(reporter, ret, status):
    record = reporter.report_stat("master", "slave", "func", ret)
    assert record.status == status


def test_stat_names_and_default_slave_ip(reporter):
    record = reporter.report_stat("Base.GatewayServer", "http_st", "/f", 0, 12)
    assert record.slave == "Base.http_st"
    assert record.slave_ip == "10.0.0.1"
    assert record.master_ip == "10.0.0.1"
    assert record.total_time == 12
    assert reporter.stats == [record]


def test_stat_explicit_slave_ip(reporter):
    record = reporter.report_stat("m", "s", "i", 0, 0, "10.0.0.9")
    assert record.slave_ip == "10.0.0.9"


def test_property_key_and_count(reporter):
    reporter.report_property("TupTotalReqNum")
    prop = reporter.report_property("TupTotalReqNum", 5)
    assert prop.key == "Base.GatewayServer.TupTotalReqNum"
    assert prop.kind == PropertyKind.COUNT
    assert prop.value == 2


def test_property_sum_and_avg(reporter):
    reporter.report_property("s", 4, PropertyKind.SUM)
    total = reporter.report_property("s", 6, PropertyKind.SUM)
    assert total.value == 10
    reporter.report_property("a", 4, 2)
    avg = reporter.report_property("a", 6, 2)
    assert avg.value == 5


def test_property_kind_fixed_at_creation(reporter):
    reporter.report_property("p", 3, PropertyKind.SUM)
    prop = reporter.report_property("p", 3, PropertyKind.AVG)
    assert prop.kind == PropertyKind.SUM


def test_unknown_kind_counts(reporter):
    prop = reporter.report_property("x", 9, 17)
    assert prop.kind == PropertyKind.COUNT
    assert prop.value == 1