"""Tests for the turn/round state machine."""

import pytest

from conftest import blank_frame, frame_with_disk
from gameplay import GameState, TurnEngine

TARGET = (640, 360)


@pytest.fixture
def engine(virtual_config):
    virtual_config['camera'].update({'width': 1280, 'height': 720})
    engine = TurnEngine(virtual_config)
    engine.locate_target(blank_frame(10, 10))
    return engine


def far_position(turn):
    """Positions well away from the target and from each other."""
    return (100 + 60 * turn, 80)


def play_turn(engine, position):
    engine.record_token(position)
    return engine.end_turn()


class TestInitialState:
    """A new game starts at round 1 with player 1 to play."""

    def test_defaults(self, config):
        engine = TurnEngine(config)
        assert engine.state is GameState.AWAITING_DETECTION
        assert engine.current_player == 1
        assert engine.current_turn == 0
        assert engine.current_round == 1
        assert engine.get_scores() == (0, 0)
        assert not engine.is_finished()
        assert len(engine.get_tokens()) == 8
        assert engine.get_target_position() is None

    def test_virtual_target_located(self, engine):
        assert engine.get_target_position() == TARGET


class TestRecordToken:
    """Committing a detection for a turn."""

    def test_owner_and_distance(self, engine):
        engine.record_token((640, 400))
        token = engine.get_tokens()[0]
        assert token.position == (640, 400)
        assert token.player == 1
        assert token.distance_to_target == pytest.approx(40.0)
        assert engine.state is GameState.TURN_COMMITTED

    def test_unknown_target_distance(self, config):
        engine = TurnEngine(config)
        engine.record_token((640, 400))
        assert engine.get_tokens()[0].distance_to_target == -1

    def test_collision_with_earlier_turn(self, engine):
        play_turn(engine, (500, 300))
        knocked = engine.record_token((510, 305))
        assert knocked == [0]
        assert engine.get_tokens()[0].position is None

    def test_explicit_turn_index(self, engine):
        engine.record_token((500, 300), turn_index=3)
        assert engine.get_tokens()[3].position == (500, 300)

    def test_out_of_range_ignored(self, engine):
        assert engine.record_token((500, 300), turn_index=8) is None

    def test_missing_detection_ignored(self, engine):
        assert engine.record_token(None) is None
        assert engine.state is GameState.AWAITING_DETECTION


class TestAdvantage:
    """Closest valid token decides the advantage."""

    def test_turn_zero_is_always_player_zero(self, engine):
        engine.registry.record(1, (640, 361), 1, 1.0)
        assert engine.advantage() == 0

    def test_lowest_index_wins_ties(self, engine):
        engine.registry.record(0, (640, 410), 0, 50.0)
        engine.registry.record(1, (640, 390), 1, 30.0)
        engine.registry.record(2, (670, 360), 0, 30.0)
        engine.current_turn = 2
        assert engine.advantage() == 1

    def test_sentinel_excluded(self, engine):
        engine.registry.record(0, (640, 410), 0, 50.0)
        engine.registry.record(1, (0, 0), 1, 1.0)
        engine.current_turn = 1
        assert engine.advantage() == 0

    def test_invalidated_token_excluded(self, engine):
        engine.registry.record(0, (640, 410), 0, 50.0)
        engine.registry.record(1, None, 1, 1.0)
        engine.current_turn = 1
        assert engine.advantage() == 0

    def test_negative_distance_excluded(self, engine):
        engine.registry.record(1, (640, 390), 1, -1)
        engine.current_turn = 1
        assert engine.advantage() == -1

    def test_owner_is_index_parity(self, engine):
        engine.registry.record(3, (640, 365), 0, 5.0)
        engine.current_turn = 3
        assert engine.advantage() == 1

    def test_only_scans_up_to_current_turn(self, engine):
        engine.registry.record(0, (640, 410), 0, 50.0)
        engine.registry.record(5, (640, 361), 1, 1.0)
        engine.current_turn = 2
        assert engine.advantage() == 0


class TestRounds:
    """Round boundaries, scoring and the end of the game."""

    def test_round_awards_one_point_to_closest(self, engine):
        play_turn(engine, (640, 460))
        play_turn(engine, (640, 390))
        for turn in range(2, 8):
            play_turn(engine, far_position(turn))
        assert engine.get_scores() == (0, 1)
        assert engine.round_log[0]['winner'] == 1
        assert engine.current_round == 2

    def test_bare_end_turns_close_one_round(self, engine):
        states = [engine.end_turn() for _ in range(8)]
        assert states.count(GameState.ROUND_BOUNDARY) == 0
        assert len(engine.round_log) == 1
        assert sum(engine.get_scores()) == 1

    def test_round_reset(self, engine):
        for turn in range(8):
            play_turn(engine, far_position(turn))
        assert engine.current_turn == 0
        assert engine.current_player == 1
        assert engine.state is GameState.AWAITING_DETECTION
        assert all(t.position is None for t in engine.get_tokens())
        assert [t.player for t in engine.get_tokens()] == [0, 1] * 4
        assert engine.get_target_position() == TARGET

    def test_turn_log(self, engine):
        play_turn(engine, (640, 460))
        play_turn(engine, (640, 390))
        assert engine.turn_log == [
            {'round': 1, 'turn': 0, 'advantage': 0},
            {'round': 1, 'turn': 1, 'advantage': 1},
        ]

    def test_game_over_after_max_rounds(self, engine):
        for _ in range(2 * 8):
            engine.end_turn()
        assert engine.is_finished()
        assert engine.state is GameState.GAME_OVER
        assert sum(engine.get_scores()) == 2

    def test_no_mutation_after_game_over(self, engine):
        for _ in range(2 * 8):
            engine.end_turn()
        scores = engine.get_scores()
        tokens = [t.position for t in engine.get_tokens()]
        assert engine.record_token((700, 400)) is None
        assert engine.end_turn() is GameState.GAME_OVER
        assert engine.get_scores() == scores
        assert [t.position for t in engine.get_tokens()] == tokens

    def test_single_round_game(self, engine):
        engine.apply_config_change('max_rounds', 1)
        for _ in range(8):
            engine.end_turn()
        assert engine.is_finished()

    def test_state_snapshot(self, engine):
        state = engine.get_state()
        assert state['state'] == 'awaiting_detection'
        assert state['scores'] == (0, 0)
        assert state['target'] == TARGET
        assert len(state['tokens']) == 8

    def test_round_without_valid_tokens_goes_to_turn_zero_holder(self, config):
        engine = TurnEngine(config)
        for _ in range(8):
            engine.record_token((500, 300))
            engine.end_turn()
        assert engine.get_target_position() is None
        assert engine.get_scores() == (1, 0)
        assert engine.round_log[0]['winner'] == 0

    def test_round_keeps_last_advantage_when_tokens_vanish(self, engine):
        play_turn(engine, (640, 460))
        play_turn(engine, (640, 390))
        for i in range(len(engine.registry)):
            engine.registry.invalidate(i)
        for _ in range(6):
            engine.end_turn()
        assert engine.turn_log[-1]['advantage'] == -1
        assert engine.get_scores() == (0, 1)
        assert engine.round_log[0]['winner'] == 1


def win_round_for_player_one(engine):
    play_turn(engine, (640, 460))
    play_turn(engine, (640, 390))
    for turn in range(2, 8):
        play_turn(engine, far_position(turn))


class TestWinner:
    """Final result once the last round is scored."""

    def test_no_winner_while_playing(self, engine):
        win_round_for_player_one(engine)
        assert engine.winner() is None
        assert engine.get_state()['winner'] is None

    def test_higher_score_wins(self, engine):
        win_round_for_player_one(engine)
        win_round_for_player_one(engine)
        assert engine.get_scores() == (0, 2)
        assert engine.winner() == 1
        assert engine.get_state()['winner'] == 1

    def test_player_zero_wins(self, engine):
        for _ in range(16):
            engine.end_turn()
        assert engine.get_scores() == (2, 0)
        assert engine.winner() == 0

    def test_tie(self, engine):
        win_round_for_player_one(engine)
        for _ in range(8):
            engine.end_turn()
        assert engine.get_scores() == (1, 1)
        assert engine.winner() == -1


class TestConfigChanges:
    """Configuration changes reach the live game."""

    def test_turns_round_trip_keeps_registry(self, engine):
        play_turn(engine, (640, 460))
        engine.record_token((640, 390))
        before = [(t.position, t.player, t.distance_to_target) for t in engine.get_tokens()]
        assert engine.apply_config_change('turns_per_round', direction=1)
        assert len(engine.get_tokens()) == 10
        assert engine.apply_config_change('turns_per_round', direction=-1)
        after = [(t.position, t.player, t.distance_to_target) for t in engine.get_tokens()]
        assert after == before

    def test_turns_floor_ignored(self, engine):
        engine.apply_config_change('turns_per_round', 4)
        assert not engine.apply_config_change('turns_per_round', direction=-1)
        assert len(engine.get_tokens()) == 4

    def test_more_turns_lengthen_round(self, engine):
        engine.apply_config_change('turns_per_round', 10)
        for _ in range(8):
            engine.end_turn()
        assert engine.current_round == 1
        engine.end_turn()
        engine.end_turn()
        assert engine.current_round == 2

    def test_new_round_uses_current_turn_count(self, engine):
        engine.apply_config_change('turns_per_round', 6)
        for _ in range(6):
            engine.end_turn()
        assert len(engine.get_tokens()) == 6

    def test_target_style_change_drops_target(self, engine):
        assert engine.apply_config_change('target_style', 'real')
        assert engine.get_target_position() is None


class TestFindToken:
    """Detection straight into the current turn."""

    def test_find_token_records_detection(self, engine):
        knocked = engine.find_token(frame_with_disk((120, 110), 34))
        assert knocked == []
        x, y = engine.get_tokens()[0].position
        assert abs(x - 120) <= 3 and abs(y - 110) <= 3

    def test_find_token_on_empty_table(self, engine):
        assert engine.find_token(blank_frame()) is None
        assert engine.state is GameState.AWAITING_DETECTION
