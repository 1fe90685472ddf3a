"""
Bracket preview command.

Runs BracketGenerator on names or anonymous seeds and prints the plan.
"""
import json

from tourney.errors import EngineError
from tourney.services.bracket_generator import BracketGenerator, BracketPlan


class BracketCommand:
    """Bracket CLI command handler."""

    def execute(self, args) -> int:
        if args.players:
            players = list(args.players)
        else:
            players = [f"seed{i}" for i in range(1, (args.count or 0) + 1)]

        try:
            plan = BracketGenerator.generate(
                players,
                args.bracket_format,
                best_of=args.best_of,
                grand_final_best_of=args.grand_final_best_of,
            )
        except EngineError as e:
            print(f"Error: {e.message}")
            return 1

        if args.json:
            print(json.dumps(plan.to_dict(), indent=2))
        else:
            print(self.render(plan))
        return 0

    @staticmethod
    def render(plan: BracketPlan) -> str:
        lines = [f"=== {plan.format.value}: {len(plan.participants)} players, {len(plan.matches)} matches ==="]
        for m in plan.matches:
            p1 = m.participant1 if m.participant1 is not None else "TBD"
            p2 = m.participant2 if m.participant2 is not None else "TBD"
            line = f"{m.key:<8} {m.bracket_type.value:<8} R{m.round_number:<3} {p1} vs {p2}"
            if m.best_of > 1:
                line += f" (Bo{m.best_of})"
            if m.next_key:
                line += f"  W→ {m.next_key}.{m.next_slot.value}"
            if m.loser_key:
                line += f"  L→ {m.loser_key}.{m.loser_slot.value}"
            lines.append(line)
        return "\n".join(lines)
