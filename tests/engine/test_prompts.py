from taleweaver.engine.prompts import (
    BEGIN,
    ELDER_GREETING,
    EOT,
    header,
    render_battle_prompt,
    render_gm_prompt,
    render_npc_prompt,
)
from taleweaver.engine.types import ChatMessage


def _turns(n):
    out = []
    for i in range(n):
        out.append(ChatMessage("user", f"question {i}"))
        out.append(ChatMessage("assistant", f"answer {i}"))
    return out


def test_npc_prompt_opens_with_greeting_on_first_turn():
    prompt = render_npc_prompt([ChatMessage("user", "Hello?")], "A quiet morning.")
    assert prompt.startswith(BEGIN + header("system"))
    assert ELDER_GREETING in prompt
    assert "Current situation: A quiet morning." in prompt
    assert prompt.endswith(header("assistant") + "Elder: ")


def test_npc_prompt_skips_greeting_once_the_elder_has_spoken():
    history = [ChatMessage("user", "Hello?"), ChatMessage("assistant", "Welcome.")]
    assert ELDER_GREETING not in render_npc_prompt(history, "ctx")


def test_npc_prompt_keeps_last_five_turns_and_drops_system_entries():
    history = [ChatMessage("system", "")] + _turns(4)
    prompt = render_npc_prompt(history, "ctx")
    assert "answer 0" not in prompt
    assert "question 1" not in prompt
    assert "Elder: answer 1" in prompt
    assert "Player: question 2" in prompt
    assert "Player: question 3" in prompt
    assert "Elder: answer 3" in prompt


def test_gm_prompt_keeps_last_six_turns_and_asks_for_analysis():
    prompt = render_gm_prompt(_turns(4))
    assert "question 0" not in prompt
    assert "question 1" in prompt
    assert "Analyse the conversation above." in prompt
    assert prompt.endswith(header("assistant"))
    assert '"Novice Sword", "Leather Armor"' in prompt


def test_battle_prompt_embeds_stats_and_action():
    prompt = render_battle_prompt("HP:50, ATK:10, DEF:8", "HP:150, ATK:25, DEF:15", "I cast fire.", "weak to fire")
    assert "Attacker stats: HP:50, ATK:10, DEF:8" in prompt
    assert "Defender stats: HP:150, ATK:25, DEF:15" in prompt
    assert "Attack: I cast fire." in prompt
    assert "Enemy info: weak to fire" in prompt
    assert prompt.count(EOT) == 1
