import pytest

from taleweaver.engine.response_parser import (
    DEFAULT_HIT_TEXT,
    DEFAULT_MISS_TEXT,
    DEFAULT_SCENE_CONTEXT,
    BattleResponse,
    GmResponse,
    extract_object,
    find_scalar,
    parse_battle_response,
    parse_gm_response,
)


def test_gm_fields_are_found_inside_noise():
    raw = 'noise {"action":"DEPART","items":["sword","shield"],"scene_context":"x"} trailing'
    gm = parse_gm_response(raw)
    assert gm.action == "DEPART"
    assert gm.items == ["sword", "shield"]
    assert gm.scene_context == "x"


@pytest.mark.parametrize("raw", ["", "no braces at all", "} backwards {", "{"])
def test_gm_malformed_input_yields_defaults(raw):
    assert parse_gm_response(raw) == GmResponse()


def test_gm_missing_fields_use_defaults():
    gm = parse_gm_response('{"items": []}')
    assert gm.scene_context == DEFAULT_SCENE_CONTEXT
    assert gm.action == "CONTINUE"
    assert gm.items == []


def test_gm_action_outside_closed_set_becomes_continue():
    assert parse_gm_response('{"action": "ATTACK"}').action == "CONTINUE"
    assert parse_gm_response('{"action": " depart "}').action == "DEPART"


def test_gm_items_skip_non_string_entries():
    gm = parse_gm_response('{"items": ["Novice Sword", 3, "Leather Armor"]}')
    assert gm.items == ["Novice Sword", "Leather Armor"]


def test_battle_verdict():
    raw = '{"damage": 12, "hit": true, "effect_text": "critical!"}'
    assert parse_battle_response(raw) == BattleResponse(damage=12, hit=True, effect_text="critical!")


def test_battle_without_json_is_a_miss():
    assert parse_battle_response("I attack!") == BattleResponse(damage=0, hit=False, effect_text="attack missed")


def test_battle_defaults_effect_text_by_hit():
    assert parse_battle_response('{"damage": 5, "hit": true}').effect_text == DEFAULT_HIT_TEXT
    assert parse_battle_response('{"damage": 5, "hit": false}').effect_text == DEFAULT_MISS_TEXT


def test_battle_damage_reads_leading_integer():
    verdict = parse_battle_response('{"damage": 12.5, "hit": true}')
    assert verdict.damage == 12
    assert verdict.hit is True

    raw = '{"damage": 15 (weak spot!), "hit": true, "effect_text": "It staggers."}'
    verdict = parse_battle_response(raw)
    assert verdict.damage == 15
    assert verdict.effect_text == "It staggers."


def test_battle_unparseable_damage_is_zero():
    assert parse_battle_response('{"damage": -x, "hit": true}').damage == 0
    assert parse_battle_response('{"damage": "lots", "hit": true}').damage == 0


def test_battle_accepts_signed_damage_and_multiline_layout():
    raw = '{\n  "damage": -3 ,\n  "hit": true\n}'
    verdict = parse_battle_response(raw)
    assert verdict.damage == -3
    assert verdict.hit is True


def test_battle_hit_must_be_literal_true():
    assert parse_battle_response('{"hit": "yes"}').hit is False
    assert parse_battle_response('{"hit": True}').hit is False


def test_extract_object_spans_first_open_to_last_close():
    assert extract_object('a {"x": {"y": 1}} b } c') == '{"x": {"y": 1}} b }'
    assert extract_object("nothing") is None


def test_find_scalar_handles_escaped_quotes():
    assert find_scalar('{"effect_text": "a \\"big\\" hit"}', "effect_text") == 'a \\"big\\" hit'
    assert find_scalar('{"effect_text": "unterminated}', "effect_text") is None
