"""
Helpers for driving matches through the engine in tests.
"""
from typing import List, Optional

from tourney.orm.match import Match, REPORTABLE_STATUSES
from tourney.orm.participant import Participant


async def report_win(engine, db, match_id: int, winner_id: int, score=(2, 1)) -> Match:
    """The winner reports a win with score (winner, loser)."""
    match = await db.get(Match, match_id, populate_existing=True)
    winner = await db.get(Participant, winner_id)
    if match.participant1_id == winner_id:
        p1_score, p2_score = score
    else:
        p2_score, p1_score = score
    return await engine.lifecycle.report(db, match_id, winner.user_id, p1_score, p2_score)


async def play(engine, db, match_id: int, winner_id: int, score=(2, 1)) -> Match:
    """Winner reports, loser confirms."""
    match = await report_win(engine, db, match_id, winner_id, score)
    loser = await db.get(Participant, match.opponent_of(winner_id))
    return await engine.lifecycle.confirm(db, match_id, loser.user_id)


async def playable(engine, db, tournament_id: int) -> List[Match]:
    """Matches with both participants waiting for a report, bracket order."""
    matches = await engine.orchestrator.list_matches(db, tournament_id)
    return [
        m for m in matches
        if m.has_both_participants and m.status in REPORTABLE_STATUSES
    ]


async def find_match(engine, db, tournament_id: int, participant_a: int,
                     participant_b: Optional[int] = None) -> Optional[Match]:
    """The open match containing participant_a (and participant_b, if given)."""
    for match in await playable(engine, db, tournament_id):
        if match.slot_of(participant_a) is None:
            continue
        if participant_b is None or match.slot_of(participant_b) is not None:
            return match
    return None


async def play_out(engine, db, tournament_id: int, favour_lower_seed: bool = True) -> int:
    """
    Play every match to the end, the better seed always winning.
    Returns the number of matches played.
    """
    played = 0
    while True:
        matches = await playable(engine, db, tournament_id)
        if not matches:
            return played
        match = matches[0]
        p1 = await db.get(Participant, match.participant1_id)
        p2 = await db.get(Participant, match.participant2_id)
        better, worse = (p1, p2) if p1.seed < p2.seed else (p2, p1)
        winner = better if favour_lower_seed else worse
        await play(engine, db, match.id, winner.id)
        played += 1
