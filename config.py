"""
Curling Table Assistant Configuration
Central configuration for detection parameters and game rules.
"""

import copy

# HSV bands are in scikit-image units: hue, saturation and value all in [0, 1].
# They were tuned on the physical tokens with a 0-180 hue / 0-255 S,V camera scale.
DEFAULT_CONFIG = {
    'verbose': False,
    'game': {
        'turns_per_round': 8,
        'max_rounds': 2,
    },
    'token_detection': {
        'radius': 34,
        'radius_tolerance': 5,
        'unset_radius_range': (10, 80),
        'unset_radius_step': 2,
        'gray_threshold': 185 / 255,
        'red_bands': [
            ((0.0, 100 / 255, 100 / 255), (10 / 180, 1.0, 1.0)),
            ((160 / 180, 100 / 255, 100 / 255), (1.0, 1.0, 1.0)),
        ],
        'blue_band': ((75 / 180, 70 / 255, 70 / 255), (140 / 180, 1.0, 1.0)),
        'white_band': ((0.0, 0.0, 130 / 255), (1.0, 130 / 255, 1.0)),
        'canny_low_threshold': 0.1,
        'canny_high_threshold': 0.2,
        'edge_sigma': 1,
        'hough_threshold': 0.4,
        'max_circles': 200,
    },
    'target_detection': {
        'radius': 205,
        'radius_tolerance': 8,
        'closing_size': 7,
        'canny_low_threshold': 30 / 255,
        'canny_high_threshold': 100 / 255,
        'edge_sigma': 1,
        'hough_threshold': 0.35,
        'max_circles': 200,
    },
    'collision': {
        'radius_factor': 0.8,
    },
    'stability': {
        'ticks_required': 15,
        'tolerance_px': 4,
        'tick_interval_ms': 200,
    },
    'display': {
        'token_style': 'image',
        'target_style': 'real',
    },
    'camera': {
        'width': 1280,
        'height': 720,
        'exposure': -8,
        'frame_path': 'image.jpg',
    },
}

# Adjustable settings: where they live, how one step changes them, and their bounds.
# 'clamp' settings are pulled back into range, 'floor' settings ignore bad requests.
SETTING_BOUNDS = {
    'turns_per_round': {'section': 'game', 'step': 2, 'min': 4, 'mode': 'floor', 'even': True},
    'max_rounds': {'section': 'game', 'step': 1, 'min': 1, 'mode': 'floor'},
    'token_radius': {'section': 'token_detection', 'key': 'radius', 'step': 1, 'min': 0, 'mode': 'clamp'},
    'target_radius': {'section': 'target_detection', 'key': 'radius', 'step': 1, 'min': 0, 'max': 500,
                      'mode': 'clamp'},
    'token_style': {'section': 'display', 'choices': ('image', 'circle')},
    'target_style': {'section': 'display', 'choices': ('real', 'virtual')},
    'exposure': {'section': 'camera', 'step': 1, 'mode': 'clamp'},
    'camera_width': {'section': 'camera', 'key': 'width', 'step': 1, 'min': 1, 'mode': 'clamp'},
    'camera_height': {'section': 'camera', 'key': 'height', 'step': 1, 'min': 1, 'mode': 'clamp'},
    'stability_ticks': {'section': 'stability', 'key': 'ticks_required', 'step': 1, 'min': 1, 'mode': 'clamp'},
}


def make_config(overrides=None):
    """Deep copy of DEFAULT_CONFIG with section-wise overrides merged in."""
    config = copy.deepcopy(DEFAULT_CONFIG)
    for key, value in (overrides or {}).items():
        if isinstance(value, dict) and isinstance(config.get(key), dict):
            config[key].update(copy.deepcopy(value))
        else:
            config[key] = copy.deepcopy(value)
    return config


def _location(name):
    bounds = SETTING_BOUNDS.get(name)
    if bounds is None:
        raise KeyError(f"Unknown setting: {name}")
    return bounds, bounds['section'], bounds.get('key', name)


def get_setting(config, name):
    _, section, key = _location(name)
    return config[section][key]


def set_setting(config, name, value):
    """
    Store one adjustable setting after validating it against SETTING_BOUNDS.

    Radii and camera values are clamped into range. Turn and round counts
    below their floor (or an odd turn count) are ignored and the previous
    value is kept. Unknown style names are ignored.

    Returns True if the stored value changed.
    """
    bounds, section, key = _location(name)
    verbose = config.get('verbose', False)
    old = config[section][key]

    if 'choices' in bounds:
        if value not in bounds['choices']:
            if verbose:
                print(f"[CF] Ignoring {name}={value!r} (choices: {bounds['choices']})")
            return False
        new = value
    elif value is None:
        # only the token radius may be unset; detection then estimates it
        if name != 'token_radius':
            return False
        new = None
    else:
        new = int(value) if isinstance(old, int) or old is None else value
        lo = bounds.get('min')
        hi = bounds.get('max')
        if bounds.get('mode') == 'floor':
            if (lo is not None and new < lo) or (bounds.get('even') and new % 2):
                if verbose:
                    print(f"[CF] Ignoring {name}={new} (minimum {lo}), keeping {old}")
                return False
        else:
            if lo is not None and new < lo:
                new = lo
            if hi is not None and new > hi:
                new = hi

    config[section][key] = new
    if verbose and new != old:
        print(f"[CF] {name} set to {new}")
    return new != old


def adjust_setting(config, name, direction):
    """
    Move a setting one step up (direction > 0) or down (direction < 0).

    Style settings cycle through their choices.
    """
    bounds, _, _ = _location(name)
    current = get_setting(config, name)
    sign = 1 if direction > 0 else -1

    if 'choices' in bounds:
        choices = bounds['choices']
        return set_setting(config, name, choices[(choices.index(current) + sign) % len(choices)])

    if current is None:
        return False
    return set_setting(config, name, current + sign * bounds['step'])
