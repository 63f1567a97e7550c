"""
Curling Turn and Round Bookkeeping
Token registry, collision resolution, the turn engine and the tick-driven session.
"""

import traceback
from dataclasses import dataclass
from enum import Enum

from Curling import (
    collision_threshold,
    detect_target,
    distance,
    distance_to_target,
    find_token_circle,
    is_valid_frame,
    is_valid_position,
    read_frame,
    within_box,
)
from config import adjust_setting, set_setting


# -----------------------------
# Tokens and registry
# -----------------------------

@dataclass
class Token:
    position: tuple = None
    player: int = 0
    distance_to_target: float = -1

    @property
    def is_valid(self):
        return is_valid_position(self.position)


def new_token_slots(start, stop):
    """Empty tokens for turn indices [start, stop); even turns belong to player 0."""
    return [Token(None, i % 2, -1) for i in range(start, stop)]


class TokenRegistry:
    """
    One token slot per turn of the active round.

    The registry always holds exactly `turns` slots. Resizing keeps existing
    slots and only appends or truncates at the tail.
    """

    def __init__(self, turns):
        self.tokens = new_token_slots(0, turns)

    def __len__(self):
        return len(self.tokens)

    def __getitem__(self, index):
        return self.tokens[index]

    def __iter__(self):
        return iter(self.tokens)

    def record(self, index, position, player, distance_to_target):
        token = self.tokens[index]
        token.position = position
        token.player = player
        token.distance_to_target = distance_to_target
        return token

    def invalidate(self, index):
        self.tokens[index].position = None

    def resize(self, turns):
        current = len(self.tokens)
        if turns > current:
            self.tokens.extend(new_token_slots(current, turns))
        else:
            del self.tokens[turns:]

    def positions(self):
        return [token.position for token in self.tokens]

    def describe(self):
        lines = []
        for k, token in enumerate(self.tokens):
            if token.position is None:
                where = "-"
            else:
                where = f"{token.position[0]}, {token.position[1]}"
            lines.append(f"Turn {k + 1} (P{token.player + 1}): {where}")
        return lines


def resolve_collisions(registry, turn, threshold):
    """
    Invalidate earlier tokens that the token at `turn` now sits on.

    Only indices below `turn` are examined. A token without a valid position
    never knocks anything out. Returns the invalidated indices.
    """
    new_token = registry[turn]
    if not new_token.is_valid:
        return []

    knocked = []
    for i in range(turn):
        old_token = registry[i]
        if not old_token.is_valid:
            continue
        if distance(new_token.position, old_token.position) < threshold:
            registry.invalidate(i)
            knocked.append(i)
    return knocked


# -----------------------------
# Turn engine
# -----------------------------

class GameState(Enum):
    AWAITING_DETECTION = 'awaiting_detection'
    TURN_COMMITTED = 'turn_committed'
    ROUND_BOUNDARY = 'round_boundary'
    GAME_OVER = 'game_over'


class TurnEngine:
    """
    Turn, round and score state machine.

    Player 1 opens every round. Each round lasts `turns_per_round` turns and
    ends with one point for the player holding the advantage. The game stops
    after `max_rounds` rounds; from then on every mutating call is ignored.
    """

    def __init__(self, config):
        self.config = config
        self.registry = TokenRegistry(self.turns_per_round)
        self.state = GameState.AWAITING_DETECTION
        self.current_player = 1
        self.current_turn = 0
        self.current_round = 1
        self.player_advantage = 0
        self.scores = [0, 0]
        self.finished = False
        self.target = None
        self.turn_log = []
        self.round_log = []
        # advantage to award if the round closes while advantage() is -1
        self._leader = 0

    @property
    def turns_per_round(self):
        return self.config['game']['turns_per_round']

    @property
    def max_rounds(self):
        return self.config['game']['max_rounds']

    def _log(self, message):
        if self.config.get('verbose', False):
            print(f"[GP] {message}")

    # --- target --------------------------------------------------------------

    def locate_target(self, frame):
        """Detect the target once and keep it; later calls return the cached one."""
        if self.target is not None:
            return self.target

        self._log("Waiting for target...")
        target = detect_target(frame, self.config)
        if target is None:
            self._log("Target not found...")
            return None

        self.target = target
        self._log(f"Target found at {target[0]}, {target[1]}")
        return target

    def clear_target(self):
        self.target = None

    def get_target_position(self):
        return self.target

    # --- turns ---------------------------------------------------------------

    def record_token(self, position, turn_index=None):
        """
        Store a committed token for `turn_index` (default: the current turn)
        and knock out earlier tokens it collides with.

        Returns the list of invalidated indices, or None if nothing was recorded.
        """
        if self.finished:
            return None
        if position is None:
            return None

        index = self.current_turn if turn_index is None else turn_index
        if not 0 <= index < len(self.registry):
            self._log(f"Turn index {index} outside registry of {len(self.registry)}")
            return None

        position = (int(position[0]), int(position[1]))
        dist = distance_to_target(position, self.target)
        self.registry.record(index, position, self.current_player, dist)
        knocked = resolve_collisions(self.registry, index, collision_threshold(self.config))

        self.state = GameState.TURN_COMMITTED
        self._log(f"Token found at {position[0]}, {position[1]} (distance {dist})")
        if knocked:
            self._log(f"Knocked out tokens {knocked}")
        for line in self.registry.describe():
            self._log(line)
        return knocked

    def find_token(self, frame):
        """Detect the token in `frame` and record it for the current turn."""
        result = find_token_circle(frame, self.config)
        if result is None:
            self._log("Token not found...")
            return None
        return self.record_token(result['center'])

    def advantage(self):
        """
        Player whose token is closest to the target: 0, 1, or -1 if none is valid.

        At turn 0 the answer is always player 0. Otherwise tokens 0..current_turn
        are scanned; ties go to the lowest index, and the owner is index parity.
        """
        if self.current_turn == 0:
            return 0

        closest = -1
        best = None
        last = min(self.current_turn + 1, len(self.registry))
        for i in range(last):
            token = self.registry[i]
            if not token.is_valid or token.distance_to_target < 0:
                continue
            if best is None or token.distance_to_target < best:
                best = token.distance_to_target
                closest = i

        if closest == -1:
            return -1
        self._log(f"Closest token distance: {best}")
        return closest % 2

    def end_turn(self):
        if self.finished:
            return self.state

        self.player_advantage = self.advantage()
        if self.player_advantage != -1:
            self._leader = self.player_advantage
        self.turn_log.append({
            'round': self.current_round,
            'turn': self.current_turn,
            'advantage': self.player_advantage,
        })

        self.current_turn += 1
        self.current_player = (self.current_player + 1) % 2
        self.state = GameState.AWAITING_DETECTION

        if self.current_turn >= self.turns_per_round:
            self.state = GameState.ROUND_BOUNDARY
            self._end_round()
        return self.state

    def _end_round(self):
        # every round scores exactly one point; with no valid token left the
        # last player to hold the advantage this round keeps it
        winner = self.player_advantage if self.player_advantage != -1 else self._leader
        self.scores[winner] += 1
        self.round_log.append({
            'round': self.current_round,
            'winner': winner,
            'scores': tuple(self.scores),
        })
        self._log(f"Round {self.current_round} to player {winner + 1}, scores {self.scores}")

        if self.current_round >= self.max_rounds:
            self.finished = True
            self.state = GameState.GAME_OVER
            self._log("Game over")
            return

        self.registry = TokenRegistry(self.turns_per_round)
        self.current_round += 1
        self.current_player = 1
        self.current_turn = 0
        self.player_advantage = 0
        self._leader = 0
        self.state = GameState.AWAITING_DETECTION
        self._log("Starting new round")

    # --- display -------------------------------------------------------------

    def get_scores(self):
        return tuple(self.scores)

    def is_finished(self):
        return self.finished

    def winner(self):
        """Game result once finished: 0 or 1 for the higher score, -1 for a tie, else None."""
        if not self.finished:
            return None
        if self.scores[0] > self.scores[1]:
            return 0
        if self.scores[1] > self.scores[0]:
            return 1
        return -1

    def get_tokens(self):
        return list(self.registry)

    def get_state(self):
        return {
            'state': self.state.value,
            'current_player': self.current_player,
            'current_turn': self.current_turn,
            'current_round': self.current_round,
            'max_rounds': self.max_rounds,
            'turns_per_round': self.turns_per_round,
            'advantage': self.player_advantage,
            'scores': self.get_scores(),
            'finished': self.finished,
            'winner': self.winner(),
            'target': self.target,
            'tokens': self.registry.positions(),
        }

    # --- configuration -------------------------------------------------------

    def apply_config_change(self, name, value=None, direction=None):
        """
        Change one setting and bring the live game in line with it.

        With `direction` the setting moves one step, otherwise it is set to
        `value`. A new turn count resizes the current registry; a new target
        style drops the cached target. Returns True if the setting changed.
        """
        if direction is not None:
            changed = adjust_setting(self.config, name, direction)
        else:
            changed = set_setting(self.config, name, value)
        if not changed:
            return False

        if name == 'turns_per_round':
            self.registry.resize(self.turns_per_round)
        elif name == 'target_style':
            self.clear_target()
        return True


# -----------------------------
# Debounce and tick driver
# -----------------------------

class StabilityTracker:
    """Counts consecutive ticks on which the token stayed inside the tolerance box."""

    def __init__(self, config):
        self.config = config
        self.last_position = None
        self.count = 0

    def update(self, position):
        cfg = self.config['stability']
        if within_box(self.last_position, position, cfg['tolerance_px']):
            self.count += 1
        else:
            self.count = 0
        self.last_position = position
        return self.count >= cfg['ticks_required']

    def reset(self):
        self.last_position = None
        self.count = 0


class GameSession:
    """
    One game driven by periodic ticks.

    Each tick reads the shared frame, finds the target once, and watches the
    token: a placement that holds still for the stability window is recorded,
    and lifting the token off the table afterwards ends the turn.
    """

    def __init__(self, config, frame_reader=read_frame, token_finder=find_token_circle):
        self.config = config
        self.engine = TurnEngine(config)
        self.tracker = StabilityTracker(config)
        self.frame_reader = frame_reader
        self.token_finder = token_finder

    def tick(self, frame=None):
        engine = self.engine
        result = {
            'skipped': False,
            'error': None,
            'token': None,
            'committed': False,
            'turn_ended': False,
            'state': engine.state,
        }

        if engine.is_finished():
            result['skipped'] = True
            return result

        if frame is None:
            frame = self.frame_reader(self.config['camera']['frame_path'], self.config)
        if not is_valid_frame(frame):
            print("[GP] Invalid image or incorrect dimensions, skipping tick")
            result['skipped'] = True
            return result

        try:
            engine.locate_target(frame)

            found = self.token_finder(frame, self.config)
            position = found['center'] if found is not None else None
            result['token'] = position

            configured = self.config['token_detection']['radius']
            if found is not None and (configured is None or configured < 0):
                engine.apply_config_change('token_radius', int(round(found['radius'])))

            if engine.state is GameState.AWAITING_DETECTION:
                if self.tracker.update(position):
                    result['committed'] = engine.record_token(position) is not None
            elif engine.state is GameState.TURN_COMMITTED and position is None:
                self.end_turn()
                result['turn_ended'] = True
        except Exception as e:
            result['error'] = str(e)
            print(f"[GP] Tick failed: {e}")
            traceback.print_exc()

        result['state'] = engine.state
        return result

    def end_turn(self):
        """End the current turn by hand, e.g. from a button."""
        self.tracker.reset()
        return self.engine.end_turn()
