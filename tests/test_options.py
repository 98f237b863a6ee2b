from __future__ import annotations

from pydantic import BaseModel
import pytest

from castor.errors import ConfigurationError
from castor.options import DEFAULT_TURNS, Options
from castor.tools import Tool, Toolkit

pytestmark = pytest.mark.unit


class Answer(BaseModel):
    text: str


def test_defaults() -> None:
    options = Options()
    assert options.turns == DEFAULT_TURNS == 12
    assert options.include_tools is False
    assert options.provider_options == {}
    assert len(options.toolkit()) == 0


@pytest.mark.parametrize("turns", [0, -3, 1.5, True])
def test_turns_must_be_positive_int(turns: object) -> None:
    with pytest.raises(ConfigurationError, match="turns"):
        Options(turns=turns)  # type: ignore[arg-type]


@pytest.mark.parametrize(
    "kwargs",
    [
        {"system": 42},
        {"history": "not a list"},
        {"format": "json"},
        {"placeholders": {"output": False}},
        {"temperature": 3.0},
    ],
)
def test_invalid_options_rejected(kwargs: dict) -> None:
    with pytest.raises(ConfigurationError):
        Options(**kwargs)


@pytest.mark.parametrize("fmt", [Answer, {"text": str}, {"type": "object"}])
def test_supported_formats_accepted(fmt: object) -> None:
    assert Options(format=fmt).format is fmt  # type: ignore[arg-type]


def test_substitutes_requires_data_and_respects_opt_out() -> None:
    assert not Options().substitutes("system")
    options = Options(data={"x": 1}, placeholders={"system": False})
    assert not options.substitutes("system")
    assert options.substitutes("input")


def test_toolkit_reuses_prebuilt_instance() -> None:
    toolkit = Toolkit([Tool("a", "", {"type": "object"}, lambda _args: None)])
    assert Options(tools=toolkit).toolkit() is toolkit


def test_toolkit_applies_explain() -> None:
    options = Options(
        tools=[Tool("a", "", {"type": "object"}, lambda _args: None)], explain=True
    )
    assert options.toolkit().explain is True
