"""
Curling Table Assistant
Core functions for geometry, target/token detection, and the display overlay.
"""

import numpy as np
import matplotlib.pyplot as plt
from skimage import color, feature, transform, morphology, io, util
from matplotlib import patches


# -----------------------------
# STEP 1: Geometry
# -----------------------------

def is_valid_position(position):
    """
    A position counts as a detection only if it exists and is off the x == 0
    column, which the detection pipeline reserves for "nothing there".
    """
    return position is not None and int(position[0]) != 0


def distance(a, b):
    """Euclidean distance between two (x, y) positions."""
    return float(np.hypot(a[0] - b[0], a[1] - b[1]))


def distance_to_target(position, target):
    """Distance from a token to the target, or -1 when either is unknown."""
    if position is None or target is None:
        return -1
    return distance(position, target)


def collision_threshold(config):
    """Tokens closer than this are considered to occupy the same spot."""
    radius = config['token_detection']['radius'] or 0
    return config['collision']['radius_factor'] * radius


def within_box(previous, current, tolerance):
    """Strict +/- tolerance box test between two successive positions."""
    if previous is None or current is None:
        return False
    return (abs(current[0] - previous[0]) < tolerance and
            abs(current[1] - previous[1]) < tolerance)


# -----------------------------
# STEP 2: Frame loading
# -----------------------------

def is_valid_frame(frame):
    if not isinstance(frame, np.ndarray) or frame.size == 0:
        return False
    if frame.ndim == 2:
        return frame.shape[0] > 0 and frame.shape[1] > 0
    return frame.ndim == 3 and frame.shape[2] in (3, 4)


def normalize_frame(frame):
    """
    RGB uint8 version of a camera frame, or None if it is not an image.

    Grey frames gain three channels and RGBA frames lose the alpha channel.
    Float frames are taken to be in [0, 1]; other integer frames are clipped
    to the 8-bit range.
    """
    if not is_valid_frame(frame):
        return None

    if frame.ndim == 2:
        frame = color.gray2rgb(frame)
    elif frame.shape[2] == 4:
        frame = color.rgba2rgb(frame)

    if frame.dtype == np.uint8:
        return frame
    if frame.dtype in (np.bool_, np.uint16):
        return util.img_as_ubyte(frame)
    if np.issubdtype(frame.dtype, np.floating):
        return util.img_as_ubyte(np.clip(frame, 0.0, 1.0))
    return np.clip(frame, 0, 255).astype(np.uint8)


def read_frame(path=None, config=None):
    """
    Read the latest camera frame from the shared frame file.

    The capture process rewrites this file on its own schedule, so the read
    may hit a missing, empty or half-written image. All of those give None.
    """
    if path is None:
        path = config['camera']['frame_path']
    try:
        frame = io.imread(path)
    except Exception as e:
        print(f"[IO] Unreadable frame {path}: {e}")
        return None

    frame = normalize_frame(frame)
    if frame is None:
        print(f"[IO] Invalid image or incorrect dimensions in {path}")
    return frame


# -----------------------------
# STEP 3: Circle candidates
# -----------------------------

def find_circles(edges, radii, threshold, max_circles):
    """
    Circular Hough transform over `radii`.
    Returns (cx, cy, radius) arrays of every peak above `threshold`.
    """
    radii = np.asarray(radii, dtype=int)
    if radii.size == 0 or not np.any(edges):
        empty = np.array([], dtype=int)
        return empty, empty, empty

    hough_res = transform.hough_circle(edges, radii)
    _, cx, cy, radii_detected = transform.hough_circle_peaks(
        hough_res, radii, threshold=threshold, total_num_peaks=max_circles
    )
    return cx, cy, radii_detected


def average_circles(cx, cy, radii=None):
    """
    Collapse all circle candidates into one detection.

    The centre is the arithmetic mean of the candidate centres, truncated to
    whole pixels; the radius is the mean candidate radius. Every candidate
    counts: downstream tolerances are tuned for this plain average.
    """
    n = len(cx)
    if n == 0:
        return None

    center = (int(np.sum(cx) / n), int(np.sum(cy) / n))
    radius = None
    if radii is not None and len(radii) > 0:
        radius = float(np.sum(radii) / len(radii))

    return {
        'center': center,
        'radius': radius,
        'n_circles': n,
    }


def _search_radii(radius, tolerance):
    return np.arange(max(1, int(radius) - tolerance), int(radius) + tolerance + 1)


# -----------------------------
# STEP 4: Token detection
# -----------------------------

def _in_band(hsv, band):
    lower, upper = band
    return np.all((hsv >= np.asarray(lower)) & (hsv <= np.asarray(upper)), axis=-1)


def _crop_box(mask, margin):
    """Row and column slices around the set pixels of `mask`, grown by `margin`."""
    rows = np.flatnonzero(mask.any(axis=1))
    if rows.size == 0:
        return None
    cols = np.flatnonzero(mask.any(axis=0))
    h, w = mask.shape
    return (slice(max(0, rows[0] - margin), min(h, rows[-1] + margin + 1)),
            slice(max(0, cols[0] - margin), min(w, cols[-1] + margin + 1)))


def build_token_mask(frame, config, radius=None):
    """
    Binary map of pixels that may belong to a token.

    Dark pixels are kept, then anything red, blue (target paint) or
    near-white (glare) is removed. An opening (~radius/4) drops speckles and
    a closing (~radius/2) fills small gaps.

    Only dark pixels go through the HSV test, and the morphology runs on the
    box around the surviving pixels, so the cost follows the amount of dark
    material on the table rather than the frame size.
    """
    cfg = config['token_detection']
    if radius is None:
        radius = cfg['radius']
    if radius is None or radius < 0:
        lo, hi = cfg['unset_radius_range']
        radius = (lo + hi) // 2

    img = normalize_frame(frame)
    gray = color.rgb2gray(img)
    dark = gray <= cfg['gray_threshold']
    mask = np.zeros(dark.shape, dtype=bool)
    if not dark.any():
        return mask

    hsv = color.rgb2hsv(img[dark].reshape(1, -1, 3))[0]
    excluded = _in_band(hsv, cfg['blue_band']) | _in_band(hsv, cfg['white_band'])
    for band in cfg['red_bands']:
        excluded |= _in_band(hsv, band)

    candidates = np.zeros_like(dark)
    candidates[dark] = ~excluded

    open_radius = max(1, int(radius) // 8)
    close_radius = max(1, int(radius) // 4)
    box = _crop_box(candidates, close_radius + 1)
    if box is None:
        return mask

    region = morphology.binary_opening(
        candidates[box], morphology.disk(open_radius, decomposition='sequence'))
    region = morphology.binary_closing(
        region, morphology.disk(close_radius, decomposition='sequence'))
    mask[box] = region
    return mask


def find_token_circle(frame, config):
    """
    Detect the token in a frame.

    Returns a dict with 'center', 'radius' and 'n_circles', or None when no
    circle is found. When the configured token radius is unset (None or
    negative) a wide radius range is searched in coarse steps and the
    returned radius is the mean of the candidates.
    """
    cfg = config['token_detection']
    verbose = config.get('verbose', False)

    configured = cfg['radius']
    radius_unset = configured is None or configured < 0
    if radius_unset:
        lo, hi = cfg['unset_radius_range']
        radii = np.arange(lo, hi + 1, cfg['unset_radius_step'])
        morph_radius = (lo + hi) // 2
    else:
        radii = _search_radii(configured, cfg['radius_tolerance'])
        morph_radius = configured

    mask = build_token_mask(frame, config, radius=morph_radius)
    box = _crop_box(mask, 4 * int(np.ceil(cfg['edge_sigma'])) + 2)
    if box is None:
        if verbose:
            print("[KD] Circles found: 0")
        return None

    edges = feature.canny(
        mask[box].astype(float),
        sigma=cfg['edge_sigma'],
        low_threshold=cfg['canny_low_threshold'],
        high_threshold=cfg['canny_high_threshold']
    )

    cx, cy, rs = find_circles(edges, radii, cfg['hough_threshold'], cfg['max_circles'])
    if verbose:
        print(f"[KD] Circles found: {len(cx)}")

    result = average_circles(cx + box[1].start, cy + box[0].start, rs)
    if result is None:
        return None
    if not radius_unset:
        result['radius'] = float(configured)
    return result


def detect_token(frame, config):
    """Token position (x, y) in the frame, or None."""
    result = find_token_circle(frame, config)
    if result is None:
        return None
    return result['center']


# -----------------------------
# STEP 5: Target detection
# -----------------------------

def virtual_target_position(config):
    """Fixed target point at the centre of the camera canvas."""
    cam = config['camera']
    return (cam['width'] // 2, cam['height'] // 2)


def detect_target(frame, config):
    """
    Target centre (x, y), or None.

    A virtual target is always at the canvas centre. A real one is found with
    low Canny thresholds (the painted circle is rarely perfect), a 7x7
    disk closing to bridge edge gaps, and a Hough search within
    +/- tolerance of the configured radius; all candidate centres are averaged.
    """
    if config['display']['target_style'] == 'virtual':
        return virtual_target_position(config)

    cfg = config['target_detection']
    verbose = config.get('verbose', False)

    gray = color.rgb2gray(normalize_frame(frame))
    edges = feature.canny(
        gray,
        sigma=cfg['edge_sigma'],
        low_threshold=cfg['canny_low_threshold'],
        high_threshold=cfg['canny_high_threshold']
    )

    half = cfg['closing_size'] // 2
    edges = morphology.binary_closing(edges, morphology.disk(half))

    radii = _search_radii(cfg['radius'], cfg['radius_tolerance'])
    cx, cy, _ = find_circles(edges, radii, cfg['hough_threshold'], cfg['max_circles'])
    if verbose:
        print(f"[TD] Circles found: {len(cx)}")

    result = average_circles(cx, cy)
    if result is None:
        return None
    return result['center']


# -----------------------------
# STEP 6: Display overlay
# -----------------------------

PLAYER_COLOURS = {
    0: 'tab:blue',
    1: 'tab:red',
}


def _draw_target(ax, target, config):
    radius = config['target_detection']['radius']
    x, y = target

    if config['display']['target_style'] == 'virtual':
        ax.add_patch(patches.Circle((x, y), radius, facecolor='blue', edgecolor='none', alpha=0.2))
        ax.add_patch(patches.Circle((x, y), radius, linewidth=2.0, edgecolor='blue', facecolor='none'))
        ax.add_patch(patches.Circle((x, y), 0.5 * radius, linewidth=2.0, edgecolor='red', facecolor='none'))
        ax.add_patch(patches.Circle((x, y), 5, facecolor='red', edgecolor='none'))
    else:
        ax.add_patch(patches.Circle((x, y), radius, linewidth=3.0, edgecolor='blue', facecolor='none'))


def _draw_token(ax, token, config):
    radius = config['token_detection']['radius'] or 0
    x, y = token.position
    colour = PLAYER_COLOURS.get(token.player, 'white')

    if config['display']['token_style'] == 'circle':
        ax.add_patch(patches.Circle((x, y), radius, linewidth=3.0, edgecolor=colour, facecolor='none'))
    else:
        # stone look: granite body, coloured cap
        ax.add_patch(patches.Circle((x, y), radius, facecolor='dimgray', edgecolor='black', alpha=0.85))
        ax.add_patch(patches.Circle((x, y), 0.6 * radius, facecolor=colour, edgecolor='none', alpha=0.9))


def create_game_overlay(frame, tokens, target, config):
    """
    Draw the target and every valid token over the frame.
    Returns the rendered RGBA image array.
    """
    img = normalize_frame(frame)
    h, w = img.shape[:2]

    fig = plt.figure(figsize=(w / 100, h / 100), dpi=100)
    ax = fig.add_axes([0, 0, 1, 1])
    ax.imshow(img)

    if target is not None:
        _draw_target(ax, target, config)

    for token in tokens:
        if is_valid_position(token.position):
            _draw_token(ax, token, config)

    ax.set_xlim(0, w)
    ax.set_ylim(h, 0)
    ax.axis('off')
    fig.canvas.draw()
    overlay = np.asarray(fig.canvas.buffer_rgba()).copy()
    plt.close(fig)
    return overlay
