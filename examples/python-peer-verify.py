import asyncio
import os
import sys

import numpy as np

# Add python directory to path to import humwitness
sys.path.append(os.path.join(os.path.dirname(__file__), '../python'))

from humwitness import HumWitness, LoopbackMedium
from humwitness.config import HumWitnessConfig, configure_logging
from humwitness.crypto import CryptoUtils

SAMPLE_RATE = 44100


def record(noise_seed, modulation_seed=7, duration=10.0):
    """Simulated phone recording of the room's mains hum."""
    knots = np.random.default_rng(modulation_seed).uniform(-1.0, 1.0, 601)
    t = np.arange(int(SAMPLE_RATE * duration)) / SAMPLE_RATE
    envelope = 1.0 + 0.3 * np.interp(t, np.arange(len(knots)) * 0.1, knots)
    hum = 0.1 * envelope * np.sin(2 * np.pi * 60.0 * t)
    return hum + 0.01 * np.random.default_rng(noise_seed).standard_normal(len(t))


async def main():
    print("--- Peer Verification over a Loopback Mesh (Python) ---")
    configure_logging()

    medium = LoopbackMedium()
    config = HumWitnessConfig()
    config.mesh.discovery_interval = 0.1
    config.mesh.request_timeout = 5.0

    def node():
        return HumWitness(config=config, backends=medium.backends(config.mesh.enabled_transports))

    event_id = CryptoUtils.generate_uuid()
    requester = node()
    witnesses = [node() for _ in range(4)]
    for seed, witness in enumerate(witnesses, start=2):
        witness.register_recording(event_id, record(seed), SAMPLE_RATE)

    nodes = [requester, *witnesses]
    for n in nodes:
        await n.start()
    try:
        while len(requester.transport.get_live_peers()) < len(witnesses):
            await asyncio.sleep(0.1)

        print(f"Requester {requester.peer_id} sees {len(witnesses)} witnesses")
        result = await requester.verify_recording(record(1), SAMPLE_RATE, event_id)
    finally:
        for n in nodes:
            await n.stop()

    print("\n[Verification Result]")
    print(f"Status: {result.status.value}")
    if result.aggregation:
        print(requester.analyzer.generate_report(result.aggregation))
    for message in result.errors:
        print(f"Error: {message}")


if __name__ == "__main__":
    asyncio.run(main())
