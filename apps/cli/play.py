"""Interactive village conversation and battle rounds in the terminal.

Each player line runs the game master first; its scene context then seeds
the elder's reply. Both run as background turns that are polled while a
spinner redraws, the way a frame loop would keep rendering.
"""

from __future__ import annotations

import logging
import shlex
import sys
import time
from dataclasses import dataclass, field, replace
from typing import Any, TextIO

from taleweaver.engine.orchestrator import NPC_FALLBACK_LINE, RoleOrchestrator
from taleweaver.engine.prompts import ELDER_LABEL
from taleweaver.engine.response_parser import BattleResponse, GmResponse
from taleweaver.engine.tasks import Pending, TurnHandle
from taleweaver.engine.types import ChatMessage

from apps.cli.output import Spinner, format_table

logger = logging.getLogger(__name__)


POLL_INTERVAL_S = 0.1
DEFAULT_FIGHT_ACTION = "I swing at it with everything I have."


@dataclass(frozen=True)
class Stats:
    hp: int
    atk: int
    defense: int

    def describe(self) -> str:
        return f"HP:{self.hp}, ATK:{self.atk}, DEF:{self.defense}"


@dataclass(frozen=True)
class Item:
    name: str
    kind: str
    atk: int = 0
    defense: int = 0


@dataclass(frozen=True)
class Monster:
    name: str
    stats: Stats
    description: str
    weaknesses: tuple[str, ...] = ()

    def info(self) -> str:
        return f"{self.description} Weaknesses: {', '.join(self.weaknesses)}"


ITEMS: dict[str, Item] = {
    "Novice Sword": Item("Novice Sword", "weapon", atk=5),
    "Leather Armor": Item("Leather Armor", "armor", defense=5),
}

FOREST_GUARDIAN = Monster(
    name="Forest Guardian",
    stats=Stats(hp=150, atk=25, defense=15),
    description=(
        "An ancient forest spirit consumed by the Silence. "
        "Its body is living wood, so it is extremely vulnerable to fire."
    ),
    weaknesses=("fire", "flame", "burning", "fire magic"),
)

PLAYER_BASE_STATS = Stats(hp=50, atk=10, defense=8)


@dataclass
class PlayState:
    history: list[ChatMessage] = field(default_factory=list)
    inventory: list[Item] = field(default_factory=list)
    hp: int = PLAYER_BASE_STATS.hp
    enemy: Monster | None = None

    @property
    def stats(self) -> Stats:
        return Stats(
            hp=self.hp,
            atk=PLAYER_BASE_STATS.atk + sum(i.atk for i in self.inventory),
            defense=PLAYER_BASE_STATS.defense + sum(i.defense for i in self.inventory),
        )

    def grant_items(self, names: list[str]) -> list[Item]:
        """Add known items by name; unknown names are ignored."""
        granted = []
        for name in names:
            item = ITEMS.get(name)
            if item is None:
                logger.debug("GM offered unknown item %r", name)
                continue
            self.inventory.append(item)
            granted.append(item)
        return granted


def wait_for(handle: TurnHandle, label: str, *, stream: TextIO | None = None, interval: float = POLL_INTERVAL_S) -> Any:
    """Poll `handle` until it finishes, redrawing a spinner between polls."""
    spinner = Spinner(label, stream=stream)
    try:
        while isinstance(handle.poll(), Pending):
            spinner.tick()
            time.sleep(interval)
    finally:
        spinner.clear()
    return handle.collect()


def apply_gm_result(state: PlayState, gm: GmResponse) -> list[str]:
    """Log lines produced by the GM verdict (item grants on DEPART)."""
    if gm.action != "DEPART":
        return []
    return [f"(You received the {item.name}!)" for item in state.grant_items(gm.items)]


def resolve_battle_round(state: PlayState, verdict: BattleResponse) -> list[str]:
    """Apply the arbiter's verdict, then the enemy's counterattack.

    Returns the log lines for the round. A defeated enemy is cleared; a
    defeated player resets the whole state.
    """
    enemy = state.enemy
    if enemy is None:
        return []

    lines = [verdict.effect_text]
    if verdict.hit:
        hp = max(enemy.stats.hp - verdict.damage, 0)
        enemy = replace(enemy, stats=replace(enemy.stats, hp=hp))
        state.enemy = enemy
        lines.append(f"{enemy.name} takes {verdict.damage} damage!")
        if hp <= 0:
            lines.append(f"You defeated the {enemy.name}!")
            state.enemy = None
            return lines

    lines.append(f"The {enemy.name} attacks!")
    taken = max(0, enemy.stats.atk - state.stats.defense)
    state.hp = max(state.hp - taken, 0)
    lines.append(f"You take {taken} damage!")
    if state.hp <= 0:
        lines.append("You collapse...")
        fresh = PlayState()
        state.history, state.inventory, state.hp, state.enemy = fresh.history, fresh.inventory, fresh.hp, fresh.enemy
    return lines


# =============================================================================
# Turns
# =============================================================================


def talk_turn(orch: RoleOrchestrator, state: PlayState, line: str, *, out: TextIO) -> None:
    state.history.append(ChatMessage("user", line))

    try:
        gm = wait_for(orch.launch_gm(state.history), "the elder ponders")
    except Exception as exc:
        logger.warning("GM turn failed: %s", exc)
        _say(out, ELDER_LABEL + NPC_FALLBACK_LINE)
        return

    try:
        reply = wait_for(orch.launch_npc(state.history, gm.scene_context), "the elder speaks")
    except Exception as exc:
        logger.warning("NPC turn failed: %s", exc)
        reply = NPC_FALLBACK_LINE

    if reply:
        state.history.append(ChatMessage("assistant", reply))
        _say(out, ELDER_LABEL + reply)
    for msg in apply_gm_result(state, gm):
        _say(out, msg)


def fight_turn(orch: RoleOrchestrator, state: PlayState, action: str, *, out: TextIO) -> None:
    if state.enemy is None:
        state.enemy = FOREST_GUARDIAN
        _say(out, f"A {FOREST_GUARDIAN.name} appears!")

    enemy = state.enemy
    try:
        verdict = wait_for(
            orch.launch_battle(state.stats.describe(), enemy.stats.describe(), action, enemy.info()),
            "the blow lands",
        )
    except Exception as exc:
        logger.warning("Battle turn failed: %s", exc)
        verdict = BattleResponse(effect_text="(But nothing happened...)")

    for msg in resolve_battle_round(state, verdict):
        _say(out, msg)


def _say(out: TextIO, text: str) -> None:
    print(text, file=out, flush=True)


def _cmd_help(out: TextIO) -> None:
    _say(
        out,
        "\n".join(
            [
                "commands:",
                "  /help",
                "  /exit            leave the village",
                "  /items           show your inventory",
                "  /stats           show your stats",
                "  /fight [action]  one battle round against the forest guardian",
                "anything else is said to the elder",
            ]
        ),
    )


def _cmd_items(state: PlayState, out: TextIO) -> None:
    if not state.inventory:
        _say(out, "(your pack is empty)")
        return
    rows = [(i.name, i.kind, f"+{i.atk}", f"+{i.defense}") for i in state.inventory]
    _say(out, format_table(["item", "kind", "atk", "def"], rows))


def play_repl(orch: RoleOrchestrator, *, out: TextIO | None = None) -> int:
    out = out if out is not None else sys.stdout
    state = PlayState()
    _say(out, "You stand in the Village of Beginnings. The elder waits.")
    _say(out, "type /help for commands")

    while True:
        try:
            raw = input("> ")
        except EOFError:
            print()
            return 0
        except KeyboardInterrupt:
            print("^C")
            continue

        line = raw.strip()
        if not line:
            continue

        if line.startswith("/"):
            try:
                parts = shlex.split(line[1:])
            except ValueError as exc:
                print(f"parse error: {exc}", file=sys.stderr)
                continue
            if not parts:
                continue
            cmd, args = parts[0], parts[1:]
            if cmd in {"exit", "quit"}:
                return 0
            if cmd == "help":
                _cmd_help(out)
            elif cmd == "items":
                _cmd_items(state, out)
            elif cmd == "stats":
                _say(out, state.stats.describe())
            elif cmd == "fight":
                fight_turn(orch, state, " ".join(args) or DEFAULT_FIGHT_ACTION, out=out)
            else:
                print(f"unknown command: /{cmd} (try /help)", file=sys.stderr)
            continue

        talk_turn(orch, state, line, out=out)
