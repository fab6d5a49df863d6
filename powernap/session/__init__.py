# PowerNap - Session Module
# Nap countdown and wake control on top of the detection engine

from .controller import NapSessionController

__all__ = ["NapSessionController"]
