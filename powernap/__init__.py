# PowerNap - Sleep Onset Detection Engine
# Fuses HRV and wrist motion into a debounced sleep/awake decision

__version__ = "0.1.0"
