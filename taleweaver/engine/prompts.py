"""Role prompt templates (Llama-3 chat markup).

Each renderer turns caller-owned history into one linear prompt string.
The markup tokens are a contract with the model's chat template; the
pipeline tokenizes them as special tokens.
"""

from __future__ import annotations

from typing import Sequence

from .types import ChatMessage


BEGIN = "<|begin_of_text|>"
EOT = "<|eot_id|>"

PLAYER_LABEL = "Player: "
ELDER_LABEL = "Elder: "

GM_HISTORY_WINDOW = 6
NPC_HISTORY_WINDOW = 5

ELDER_GREETING = "Ah, it is you... Good of you to come. There is something I must tell you."

WORLD_LORE = (
    "=== World ===\n"
    "Long ago the world lived in peace under the Crystal of Harmony, which kept all things in balance.\n"
    "Then a calamity called the Silence appeared from nowhere and began to spread.\n"
    "The Silence drains life and colour, turning everything it touches into soundless grey.\n\n"
    "The story begins in the Village of Beginnings at the edge of the world.\n"
    "An old ward protects the village from the Silence, but it weakens every year.\n"
    "Right beside the village lies the Silent Forest, where monsters tainted by the Silence roam.\n\n"
    "The village elder (you) is a sage of ancient lore searching for a way to revive the Crystal.\n"
    "Recent study points to an old temple deep in the forest, but reaching it means facing many dangers.\n"
    "The elder has long awaited the arrival of a new hero.\n\n"
)


def header(role: str) -> str:
    return f"<|start_header_id|>{role}<|end_header_id|>\n\n"


def turn(role: str, content: str) -> str:
    return f"{header(role)}{content}{EOT}"


def _render_history(history: Sequence[ChatMessage], window: int) -> str:
    parts: list[str] = []
    for msg in list(history)[-window:]:
        if msg.role == "user":
            parts.append(turn("user", PLAYER_LABEL + msg.content))
        elif msg.role == "assistant":
            parts.append(turn("assistant", ELDER_LABEL + msg.content))
    return "".join(parts)


def render_npc_prompt(history: Sequence[ChatMessage], scene_context: str) -> str:
    system_prompt = (
        WORLD_LORE
        + "=== Your role ===\n"
        "You are the elder of the Village of Beginnings. Give the player kind and wise counsel.\n"
        f"Current situation: {scene_context}\n\n"
        "Traits:\n"
        "- Speak calmly, in the measured voice of an old sage\n"
        "- Respond to what the player actually said\n"
        "- Know the threat of the Silence and the Crystal of Harmony in detail\n"
        "- Encourage the young and give them hope\n"
        "- Can speak of ancient knowledge and magic\n"
        "- Warn about the village ward and the dangers of the forest\n\n"
        "Output only the elder's line of dialogue."
    )

    prompt = BEGIN + turn("system", system_prompt)

    has_greeting = any(m.role == "assistant" and m.content for m in history)
    if not has_greeting and len(history) <= 1:
        prompt += turn("assistant", ELDER_LABEL + ELDER_GREETING)

    prompt += _render_history(history, NPC_HISTORY_WINDOW)
    prompt += header("assistant") + ELDER_LABEL
    return prompt


def render_gm_prompt(history: Sequence[ChatMessage]) -> str:
    system_prompt = (
        "You are the game master of a role-playing game. Analyse the conversation with the player "
        "and answer in JSON.\n\n"
        "Setting:\n"
        "- The world is threatened by a calamity called the Silence\n"
        "- The player is in the Village of Beginnings\n"
        "- The elder is searching for a way to revive the Crystal of Harmony\n"
        "- Monsters tainted by the Silence live in the forest\n\n"
        "Required format:\n"
        "{\n"
        '  "scene_context": "description of the current situation and mood",\n'
        '  "action": "CONTINUE/DEPART",\n'
        '  "items": ["item name 1", "item name 2"]\n'
        "}\n\n"
        "Rules:\n"
        '- If the player clearly states they are setting out on the adventure: action="DEPART"\n'
        '- Otherwise: action="CONTINUE"\n'
        '- On DEPART set items to ["Novice Sword", "Leather Armor"]\n\n'
        "Weigh what the player said and the context carefully before deciding."
    )

    prompt = BEGIN + turn("system", system_prompt)
    prompt += _render_history(history, GM_HISTORY_WINDOW)
    prompt += turn("user", "Analyse the conversation above.")
    prompt += header("assistant")
    return prompt


def render_battle_prompt(
    player_stats: str,
    enemy_stats: str,
    player_action: str,
    enemy_info: str = "",
) -> str:
    system_prompt = (
        "You are the arbiter of combat against monsters tainted by the Silence.\n"
        "A character with the stats below attacks in the way described.\n"
        "Decide how much damage the attack deals, whether it hits, and whether any extra effect occurs,\n"
        "and answer in the JSON format below. Never output anything except the JSON.\n\n"
        "{\n"
        '  "damage": number,\n'
        '  "hit": true/false,\n'
        '  "effect_text": "description of the extra effect"\n'
        "}\n\n"
        f"Attacker stats: {player_stats}\n"
        f"Defender stats: {enemy_stats}\n"
        f"Enemy info: {enemy_info}\n"
        f"Attack: {player_action}\n\n"
        "Rules:\n"
        "- Base damage is attack minus defence\n"
        "- If the attack exploits the enemy's weakness, multiply damage by 1.5 to 2\n"
        "- Judge the hit chance by how sensible the attack is (usually 80-90%)\n"
        "- When a weakness is exploited, say so in effect_text"
    )
    return BEGIN + turn("system", system_prompt) + header("assistant")
