#!/usr/bin/env python3
"""
Generate sample hum recordings for humwitness testing.
"""
import os
import wave

import numpy as np

SAMPLE_RATE = 44100


def hum_recording(modulation_seed, noise_seed, duration=10.0, start=0.0, mains=60.0, noise=0.01):
    """Mains hum with a seeded amplitude envelope plus device noise.

    Recordings that share ``modulation_seed`` were made on the same grid.
    """
    knots = np.random.default_rng(modulation_seed).uniform(-1.0, 1.0, 601)
    t = start + np.arange(int(SAMPLE_RATE * duration)) / SAMPLE_RATE
    envelope = 1.0 + 0.3 * np.interp(t, np.arange(len(knots)) * 0.1, knots)
    signal = 0.1 * envelope * np.sin(2 * np.pi * mains * t)
    signal += noise * np.random.default_rng(noise_seed).standard_normal(len(t))
    return signal


def write_wav(samples, filename):
    pcm = (np.clip(samples, -1, 1) * 32767).astype(np.int16)
    with wave.open(filename, "wb") as wf:
        wf.setnchannels(1)
        wf.setsampwidth(2)
        wf.setframerate(SAMPLE_RATE)
        wf.writeframes(pcm.tobytes())
    print(f"Created {filename}")


os.makedirs('test-data/event', exist_ok=True)
os.makedirs('test-data/elsewhere', exist_ok=True)

print("Generating sample hum recordings...")
print("=" * 50)

# Four devices in the same room
for device in range(1, 5):
    write_wav(hum_recording(7, device), f'test-data/event/device-{device}.wav')

# Same room, joined half a second late
write_wav(hum_recording(7, 9, start=0.5), 'test-data/event/late-joiner.wav')

# Different grid, different grid frequency, too short
write_wav(hum_recording(99, 1), 'test-data/elsewhere/other-building.wav')
write_wav(hum_recording(7, 1, mains=50.0), 'test-data/elsewhere/europe-50hz.wav')
write_wav(hum_recording(7, 1, duration=2.0), 'test-data/elsewhere/too-short.wav')

print("=" * 50)
print("All sample recordings created successfully!")
print("\nYou can now:")
print("  1. Fingerprint one: humwitness extract test-data/event/device-1.wav -o device-1.json")
print("  2. Compare two: humwitness compare test-data/event/device-1.wav test-data/event/device-2.wav")
print("  3. Compare across grids: humwitness compare test-data/event/device-1.wav test-data/elsewhere/other-building.wav")
