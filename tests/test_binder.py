import json

import pytest

from playdeck.core.exceptions import ValidationError
from playdeck.models import FormField
from playdeck.services.binder import bind_defaults, bind_variables


def field(name, field_type="text", **kwargs):
    if isinstance(kwargs.get("options"), list):
        kwargs["options"] = json.dumps(kwargs["options"])
    return FormField(form_id="f", name=name, field_type=field_type, **kwargs)


def test_required_field_missing_without_default_fails():
    fields = [field("version", required=True)]
    with pytest.raises(ValidationError) as exc:
        bind_variables(fields, {})
    assert exc.value.field == "version"
    assert exc.value.reason == "is required"


@pytest.mark.parametrize("value", [None, "", "   "])
def test_blank_values_count_as_missing(value):
    with pytest.raises(ValidationError):
        bind_variables([field("version", required=True)], {"version": value})


def test_defaults_satisfy_required_fields():
    fields = [
        field("version", required=True, default_value="1.2"),
        field("replicas", "number", required=True, default_value="3"),
        field("dry_run", "bool", required=True, default_value="yes"),
        field("env", "select", required=True, default_value="prod", options=["dev", "prod"]),
    ]
    assert bind_variables(fields, {}) == {"version": "1.2", "replicas": 3, "dry_run": True, "env": "prod"}
    assert bind_defaults(fields) == bind_variables(fields, None)


def test_optional_field_without_default_is_omitted():
    fields = [field("note"), field("count", "number")]
    assert bind_variables(fields, {"note": "hi"}) == {"note": "hi"}


def test_unknown_keys_are_dropped():
    assert bind_variables([field("a")], {"a": "x", "injected": "rm -rf /"}) == {"a": "x"}


@pytest.mark.parametrize("raw, expected", [("5", 5), (5, 5), ("2.5", 2.5), (4.0, 4), (" 10 ", 10), ("-7", -7)])
def test_number_coercion(raw, expected):
    result = bind_variables([field("n", "number")], {"n": raw})["n"]
    assert result == expected
    assert type(result) is type(expected)


def test_large_integers_stay_exact():
    assert bind_variables([field("n", "number")], {"n": "9007199254740993"})["n"] == 9007199254740993
    assert bind_variables([field("n", "number")], {"n": "1e3"})["n"] == 1000


@pytest.mark.parametrize("raw", ["abc", True, "nan", "inf", [1]])
def test_number_rejects_non_numeric(raw):
    with pytest.raises(ValidationError) as exc:
        bind_variables([field("n", "number")], {"n": raw})
    assert exc.value.reason == "not numeric"


@pytest.mark.parametrize("raw, expected", [
    (True, True), ("TRUE", True), ("yes", True), ("on", True), ("1", True), (1, True),
    (False, False), ("false", False), ("No", False), ("off", False), ("0", False), (0, False),
])
def test_bool_tokens(raw, expected):
    assert bind_variables([field("b", "bool")], {"b": raw}) == {"b": expected}


@pytest.mark.parametrize("raw", ["maybe", 2, "y"])
def test_bool_rejects_other_values(raw):
    with pytest.raises(ValidationError) as exc:
        bind_variables([field("b", "bool")], {"b": raw})
    assert exc.value.reason == "not a boolean"


def test_select_must_match_an_option():
    fields = [field("env", "select", options=["dev", "prod"])]
    assert bind_variables(fields, {"env": "dev"}) == {"env": "dev"}
    with pytest.raises(ValidationError) as exc:
        bind_variables(fields, {"env": "staging"})
    assert exc.value.reason == "not a valid option"


def test_unknown_field_type_is_rejected():
    with pytest.raises(ValidationError) as exc:
        bind_variables([field("x", "date")], {"x": "2024-01-01"})
    assert "unknown field type" in exc.value.reason


def test_output_is_json_serialisable():
    fields = [field("a"), field("n", "number"), field("b", "bool")]
    bound = bind_variables(fields, {"a": 1, "n": "3.5", "b": "on"})
    assert json.loads(json.dumps(bound)) == {"a": "1", "n": 3.5, "b": True}
