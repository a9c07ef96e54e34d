import pytest

from copilotgw.backends.base import END_OF_TURN, GenerationOptions, ensure_stop_marker
from copilotgw.errors import OptionsError


def build(**overrides):
    values = {"temperature": 0.2, "top_p": 0.9, "requested_tokens": 50, "ceiling": 200, "stop": []}
    values.update(overrides)
    return GenerationOptions.build(**values)


def test_num_predict_capped_at_ceiling():
    assert build(requested_tokens=5000).num_predict == 200


def test_num_predict_keeps_smaller_request():
    assert build(requested_tokens=17).num_predict == 17


@pytest.mark.parametrize("requested", [None, 0, -3])
def test_missing_token_request_uses_ceiling(requested):
    assert build(requested_tokens=requested).num_predict == 200


@pytest.mark.parametrize(
    "stop",
    [
        [],
        ["\n\n"],
        [END_OF_TURN],
        [END_OF_TURN, "\n", END_OF_TURN],
        ["\n", END_OF_TURN, "\n"],
    ],
)
def test_stop_set_contains_marker_exactly_once(stop):
    options = build(stop=stop)
    assert options.stop.count(END_OF_TURN) == 1
    assert len(options.stop) == len(set(options.stop))
    assert set(stop) <= set(options.stop)


def test_stop_order_of_first_appearance_kept():
    assert ensure_stop_marker(["b", "a", "b"]) == ("b", "a", END_OF_TURN)


def test_backend_options_mapping():
    options = build(stop=["\n\n"])
    assert options.as_backend_options() == {
        "temperature": 0.2,
        "top_p": 0.9,
        "stop": ["\n\n", END_OF_TURN],
        "num_predict": 50,
    }


@pytest.mark.parametrize(
    "kwargs",
    [
        {"temperature": -0.1},
        {"temperature": 2.5},
        {"top_p": 1.5},
        {"top_p": -1.0},
    ],
)
def test_out_of_range_values_rejected(kwargs):
    with pytest.raises(OptionsError):
        build(**kwargs)


def test_direct_construction_validates_stop_marker():
    with pytest.raises(OptionsError):
        GenerationOptions(temperature=0.0, top_p=1.0, num_predict=1, stop=("\n",))
    with pytest.raises(OptionsError):
        GenerationOptions(temperature=0.0, top_p=1.0, num_predict=0)
