"""
TrustFi Claim Oracle — Deterministic Art Engine
===============================================
Renders the "Living Profile" collectible as a pure function of
(profile_id, score). Any observer (indexer, marketplace, this API) that knows
the on-chain score reproduces the exact same SVG bytes.

Pipeline:
    1. Stage resolution    : highest EvolutionStage whose min_score <= score
    2. Seed                : mix32(profile_id, score, grid_size)
    3. Palette             : base hue from seed, +40° / +80° rotations, dark background
    4. Pixels              : half-width columns, 2 PRNG draws per cell, mirrored
    5. Overlays            : shell (lowest stage), crack (score >= 40), sparkles (top stage)
    6. Packaging           : radial glow, labels, SVG string, base64 data URI

All randomness in a render comes from one mulberry32 stream. Sparkles continue
that stream after the pixel loop has drawn every cell; changing the draw order
changes every downstream value.
"""

from __future__ import annotations

import base64
import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from engine.errors import RenderFailure

logger = logging.getLogger("trustfi.art")

MASK32 = 0xFFFFFFFF

CANVAS_SIZE      = 400
ART_EXTENT       = 264      # px reserved for the pixel grid
BASE_DENSITY     = 0.55
DENSITY_STEP     = 0.05
CRACK_THRESHOLD  = 40
SPARKLE_COUNT    = 12
PALETTE_ROTATION = (0, 40, 80)


@dataclass(frozen=True)
class EvolutionStage:
    name:      str
    min_score: int
    grid_size: int


EVOLUTION_STAGES: Tuple[EvolutionStage, ...] = (
    EvolutionStage("Egg",        0,    12),
    EvolutionStage("Hatchling",  50,   14),
    EvolutionStage("Fledgling",  150,  16),
    EvolutionStage("Guardian",   400,  18),
    EvolutionStage("Ascendant",  1000, 20),
)


def validate_stages(stages: Sequence[EvolutionStage]) -> Tuple[EvolutionStage, ...]:
    if not stages:
        raise ValueError("evolution table must contain at least one stage")
    for prev, cur in zip(stages, stages[1:]):
        if cur.min_score <= prev.min_score:
            raise ValueError(
                f"evolution table not strictly increasing: {prev.name}({prev.min_score}) "
                f"-> {cur.name}({cur.min_score})"
            )
    for stage in stages:
        if stage.grid_size < 1:
            raise ValueError(f"stage {stage.name} has invalid grid size {stage.grid_size}")
    return tuple(stages)


@dataclass(frozen=True)
class GeneratedArt:
    svg_markup:          str
    palette_seed_hue:    int
    stage:               EvolutionStage
    stage_index:         int
    score_at_generation: int
    next_stage_score:    Optional[int]
    palette:             Tuple[str, ...]
    pixels:              Tuple[Tuple[int, int, int], ...]   # (column, row, palette index)

    @property
    def data_uri(self) -> str:
        encoded = base64.b64encode(self.svg_markup.encode("utf-8")).decode("ascii")
        return f"data:image/svg+xml;base64,{encoded}"


# ---------------------------------------------------------------------------
# Seeding + PRNG
# ---------------------------------------------------------------------------
def _fold32(value: int) -> int:
    """XOR-fold an arbitrarily large non-negative int down to 32 bits."""
    h = 0
    while value:
        h ^= value & MASK32
        value >>= 32
    return h


def mix32(profile_id: int, score: int, grid_size: int) -> int:
    h = (
        (_fold32(profile_id) * 0x9E3779B1)
        ^ (_fold32(score) * 0x85EBCA77)
        ^ (grid_size * 0xC2B2AE3D)
    ) & MASK32
    # murmur3 finalizer
    h ^= h >> 16
    h = (h * 0x85EBCA6B) & MASK32
    h ^= h >> 13
    h = (h * 0xC2B2AE35) & MASK32
    h ^= h >> 16
    return h


class Mulberry32:
    """32-bit state PRNG. Yields floats in [0, 1)."""

    def __init__(self, seed: int):
        self._state = seed & MASK32

    def next(self) -> float:
        self._state = (self._state + 0x6D2B79F5) & MASK32
        t = self._state
        t = ((t ^ (t >> 15)) * (t | 1)) & MASK32
        t ^= (t + (((t ^ (t >> 7)) * (t | 61)) & MASK32)) & MASK32
        return ((t ^ (t >> 14)) & MASK32) / 4294967296.0


# ---------------------------------------------------------------------------
# Palette
# ---------------------------------------------------------------------------
def hsl_to_hex(hue: float, saturation: float, lightness: float) -> str:
    """
    Standard piecewise hue-sector HSL → RGB. Channels are truncated to int
    (not rounded) and written as zero-padded lowercase hex.
    """
    hue = hue % 360
    c = (1 - abs(2 * lightness - 1)) * saturation
    x = c * (1 - abs((hue / 60) % 2 - 1))
    m = lightness - c / 2

    if hue < 60:
        r, g, b = c, x, 0.0
    elif hue < 120:
        r, g, b = x, c, 0.0
    elif hue < 180:
        r, g, b = 0.0, c, x
    elif hue < 240:
        r, g, b = 0.0, x, c
    elif hue < 300:
        r, g, b = x, 0.0, c
    else:
        r, g, b = c, 0.0, x

    def channel(v: float) -> int:
        return max(0, min(255, int((v + m) * 255)))

    return f"#{channel(r):02x}{channel(g):02x}{channel(b):02x}"


def derive_palette(seed: int) -> Tuple[int, Tuple[str, str, str], str]:
    """(base hue, three foreground colors, background color)."""
    hue = (seed ^ (seed >> 16)) % 360
    colors = tuple(hsl_to_hex(hue + rot, 0.70, 0.55) for rot in PALETTE_ROTATION)
    background = hsl_to_hex(hue, 0.45, 0.10)
    return hue, colors, background


# ---------------------------------------------------------------------------
# Stage resolution
# ---------------------------------------------------------------------------
def resolve_stage_index(score: int, stages: Sequence[EvolutionStage] = EVOLUTION_STAGES) -> int:
    index = 0
    for i, stage in enumerate(stages):
        if stage.min_score <= score:
            index = i
        else:
            break
    return index


def resolve_stage(score: int, stages: Sequence[EvolutionStage] = EVOLUTION_STAGES) -> EvolutionStage:
    return stages[resolve_stage_index(score, stages)]


# ---------------------------------------------------------------------------
# SVG fragments
# ---------------------------------------------------------------------------
def _shell_overlay(color: str) -> str:
    return (
        f'<ellipse cx="200" cy="205" rx="112" ry="142" fill="none" '
        f'stroke="{color}" stroke-width="6" opacity="0.85"/>'
    )


def _crack_overlay(color: str) -> str:
    return (
        f'<path d="M148 150 L176 182 L158 204 L192 236 L178 258 L214 284" fill="none" '
        f'stroke="{color}" stroke-width="4" stroke-linecap="round" stroke-linejoin="round"/>'
    )


def _sparkle(x: int, y: int, r: int, color: str) -> str:
    return (
        f'<path d="M{x} {y - r * 2} L{x + r} {y} L{x} {y + r * 2} L{x - r} {y} Z" '
        f'fill="{color}" opacity="0.9"/>'
    )


def _layout_pixels(
    rng: Mulberry32, grid: int, density: float
) -> List[Tuple[int, int, int]]:
    """Two draws per half-row cell, always, so the stream position is independent of density."""
    half = (grid + 1) // 2
    cells: List[Tuple[int, int, int]] = []
    for row in range(grid):
        for col in range(half):
            on = rng.next() < density
            color_index = int(rng.next() * 3)
            if not on:
                continue
            cells.append((col, row, color_index))
            mirror = grid - 1 - col
            if mirror != col:
                cells.append((mirror, row, color_index))
    return cells


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def _check_int(name: str, value) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise RenderFailure(f"{name} must be a non-negative integer, got {value!r}")
    return value


def render(
    profile_id: int,
    score: int,
    stages: Sequence[EvolutionStage] = EVOLUTION_STAGES,
) -> GeneratedArt:
    profile_id = _check_int("profile_id", profile_id)
    score      = _check_int("score", score)

    try:
        return _render(profile_id, score, stages)
    except RenderFailure:
        raise
    except Exception as e:
        logger.error(f"[ART] render failed for profile={profile_id} score={score}: {e}", exc_info=True)
        raise RenderFailure(f"render failed for profile {profile_id}", e)


def _render(profile_id: int, score: int, stages: Sequence[EvolutionStage]) -> GeneratedArt:
    stages      = validate_stages(stages)
    stage_index = resolve_stage_index(score, stages)
    stage       = stages[stage_index]
    is_top      = stage_index == len(stages) - 1
    next_score  = None if is_top else stages[stage_index + 1].min_score

    grid = stage.grid_size
    seed = mix32(profile_id, score, grid)
    rng  = Mulberry32(seed)
    hue, colors, background = derive_palette(seed)

    density = BASE_DENSITY - DENSITY_STEP * stage_index
    cells   = _layout_pixels(rng, grid, density)

    cell   = max(1, ART_EXTENT // grid)
    offset = (CANVAS_SIZE - cell * grid) // 2

    parts: List[str] = [
        f'<svg xmlns="http://www.w3.org/2000/svg" width="{CANVAS_SIZE}" height="{CANVAS_SIZE}" '
        f'viewBox="0 0 {CANVAS_SIZE} {CANVAS_SIZE}" shape-rendering="crispEdges">',
        '<defs><radialGradient id="glow" cx="50%" cy="50%" r="50%">'
        f'<stop offset="0%" stop-color="{colors[0]}" stop-opacity="{0.15 + 0.15 * stage_index:.2f}"/>'
        f'<stop offset="100%" stop-color="{background}" stop-opacity="0"/>'
        '</radialGradient></defs>',
        f'<rect width="{CANVAS_SIZE}" height="{CANVAS_SIZE}" fill="{background}"/>',
        f'<rect width="{CANVAS_SIZE}" height="{CANVAS_SIZE}" fill="url(#glow)"/>',
    ]
    for col, row, color_index in cells:
        parts.append(
            f'<rect x="{offset + col * cell}" y="{offset + row * cell}" '
            f'width="{cell}" height="{cell}" fill="{colors[color_index]}"/>'
        )

    if stage_index == 0:
        parts.append(_shell_overlay(colors[1]))
    if score >= CRACK_THRESHOLD:
        parts.append(_crack_overlay(colors[2]))
    if is_top:
        for _ in range(SPARKLE_COUNT):
            x = 20 + int(rng.next() * (CANVAS_SIZE - 40))
            y = 20 + int(rng.next() * (CANVAS_SIZE - 40))
            r = 2 + int(rng.next() * 4)
            parts.append(_sparkle(x, y, r, colors[int(rng.next() * 3)]))

    parts.append(
        f'<text x="200" y="34" font-family="monospace" font-size="22" text-anchor="middle" '
        f'fill="#ffffff">{stage.name}</text>'
    )
    parts.append(
        f'<text x="200" y="382" font-family="monospace" font-size="18" text-anchor="middle" '
        f'fill="#ffffff" opacity="0.85">{score} pts</text>'
    )
    parts.append("</svg>")

    return GeneratedArt(
        svg_markup          = "".join(parts),
        palette_seed_hue    = hue,
        stage               = stage,
        stage_index         = stage_index,
        score_at_generation = score,
        next_stage_score    = next_score,
        palette             = colors + (background,),
        pixels              = tuple(cells),
    )


def build_metadata(
    profile_id: int,
    score: int,
    stages: Sequence[EvolutionStage] = EVOLUTION_STAGES,
) -> dict:
    """ERC-721 metadata document for a Living Profile token."""
    art = render(profile_id, score, stages)
    attributes = [
        {"trait_type": "Reputation Score", "value": score, "display_type": "number"},
        {"trait_type": "Evolution Stage",  "value": art.stage.name},
        {"trait_type": "Grid Size",        "value": art.stage.grid_size},
        {"trait_type": "Palette Hue",      "value": art.palette_seed_hue},
        {"trait_type": "Profile ID",       "value": str(profile_id)},
    ]
    if art.next_stage_score is not None:
        attributes.append(
            {"trait_type": "Next Stage At", "value": art.next_stage_score, "display_type": "number"}
        )
    attributes.append({"trait_type": "Dynamic", "value": "true"})

    return {
        "name": f"TrustFi Living Profile #{profile_id}",
        "description": (
            "A dynamic collectible that evolves with on-chain reputation. "
            f"Current score: {score} points ({art.stage.name})."
        ),
        "image":      art.data_uri,
        "attributes": attributes,
    }
