"""
Filler for the unused flash tail in fullfill mode.

The sequence only depends on the seed, so a verify run restarted with the
seed of the write run expects exactly the bytes that were programmed.
"""

import random as rnd


class FillGenerator:
    def __init__(self, seed=None):
        if seed is None:
            seed = rnd.SystemRandom().getrandbits(64)
        self.seed = seed
        self.restart()

    def restart(self):
        self._rnd = rnd.Random(self.seed)

    def fill(self, count):
        return bytes(self._rnd.randint(0x00, 0xff) for _ in range(count))
