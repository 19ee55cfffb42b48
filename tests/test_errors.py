from __future__ import annotations

from labtracker_dose.errors import (
    ERROR_CLASS_BY_CODE,
    FetchAbandoned,
    InvalidDoseError,
    QuotaStoreUnavailable,
    RemotePriorError,
    RemotePriorStatusError,
    RemotePriorTimeout,
    classify_error_code,
    dose_engine_error_taxonomy_v1,
)


def test_taxonomy_contract_is_stable():
    taxonomy = dose_engine_error_taxonomy_v1()

    assert taxonomy["schema_version"] == "dose_engine_error_taxonomy.v1"
    assert set(taxonomy["code_to_class"].values()) <= set(taxonomy["classes"])
    assert taxonomy["code_to_class"] == ERROR_CLASS_BY_CODE


def test_classify_error_code_normalizes_and_defaults():
    assert classify_error_code(" Remote_Timeout ") == "remote_unavailable"
    assert classify_error_code("quota_daily_exhausted") == "quota_exhausted"
    assert classify_error_code("something_new") == "other"
    assert classify_error_code(None) == "other"


def test_exception_codes_are_in_taxonomy():
    for exc_type in (RemotePriorTimeout, FetchAbandoned, InvalidDoseError, QuotaStoreUnavailable):
        assert exc_type.code in ERROR_CLASS_BY_CODE
    assert RemotePriorStatusError(502).code == "remote_status"


def test_remote_failures_share_a_base_class():
    error = RemotePriorStatusError(503)
    assert isinstance(error, RemotePriorError)
    assert error.status_code == 503
    assert "503" in str(error)
    assert isinstance(InvalidDoseError("x"), ValueError)


def test_every_mapped_code_belongs_to_a_raised_or_published_failure():
    raised = {RemotePriorTimeout.code, FetchAbandoned.code, InvalidDoseError.code, QuotaStoreUnavailable.code}
    published = {"quota_daily_exhausted", "quota_monthly_exhausted"}
    assert "insufficient_data" not in ERROR_CLASS_BY_CODE
    assert raised | published <= set(ERROR_CLASS_BY_CODE)
    assert "data_insufficiency" in dose_engine_error_taxonomy_v1()["classes"]
