#!/usr/bin/env python3
"""Generate placeholder countdown sounds (5.ogg ... 1.ogg, AirHorn.ogg).

Serve the output directory as /countdown on the rally server, or pass it to
`rallysync watch --assets`.
"""

import sys
from pathlib import Path

import numpy as np
import soundfile as sf

from rallysync.audio import COUNTDOWN_EXT, COUNTDOWN_FILES, GO_FILE

# Parameters
SAMPLE_RATE = 44100
PIP_DURATION = 0.09  # seconds per pip
PIP_GAP = 0.05  # seconds between pips of the same number
PIP_FREQ = 880  # Hz
HORN_DURATION = 0.8  # seconds
HORN_FREQS = (233.08, 293.66, 349.23)  # Bb major triad
AMPLITUDE = 0.8  # 0-1 range
OUTPUT_DIR = Path("countdown")


def fade(signal: np.ndarray, fade_seconds: float = 0.01) -> np.ndarray:
    """Apply a linear fade in/out to avoid clicks."""
    fade_samples = min(int(fade_seconds * SAMPLE_RATE), len(signal) // 2)
    if fade_samples:
        signal[:fade_samples] *= np.linspace(0, 1, fade_samples)
        signal[-fade_samples:] *= np.linspace(1, 0, fade_samples)
    return signal


def generate_pips(count: int) -> np.ndarray:
    """Generate `count` short pips so each number is distinguishable by ear."""
    t = np.linspace(0, PIP_DURATION, int(SAMPLE_RATE * PIP_DURATION), endpoint=False)
    pip = fade(np.sin(2 * np.pi * PIP_FREQ * t))
    gap = np.zeros(int(SAMPLE_RATE * PIP_GAP))
    segments = []
    for i in range(count):
        segments.append(pip)
        if i < count - 1:
            segments.append(gap)
    return np.concatenate(segments) * AMPLITUDE


def generate_horn() -> np.ndarray:
    """Generate a sawtooth chord that reads as an air horn."""
    t = np.linspace(0, HORN_DURATION, int(SAMPLE_RATE * HORN_DURATION), endpoint=False)
    chord = sum(2 * ((t * f) % 1.0) - 1 for f in HORN_FREQS) / len(HORN_FREQS)
    return fade(chord, 0.03) * AMPLITUDE


def main() -> None:
    output_dir = Path(sys.argv[1]) if len(sys.argv) > 1 else OUTPUT_DIR
    output_dir.mkdir(parents=True, exist_ok=True)
    print(f"Generating countdown sounds in {output_dir}/")

    for name in COUNTDOWN_FILES:
        path = output_dir / f"{name}.{COUNTDOWN_EXT}"
        sf.write(path, generate_pips(int(name)), SAMPLE_RATE, format="OGG", subtype="VORBIS")
        print(f"  {path}")

    path = output_dir / f"{GO_FILE}.{COUNTDOWN_EXT}"
    sf.write(path, generate_horn(), SAMPLE_RATE, format="OGG", subtype="VORBIS")
    print(f"  {path}")


if __name__ == "__main__":
    main()
