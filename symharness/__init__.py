"""symharness: symbolic-execution harness synthesis for assertion-reaching functions"""

__version__ = "0.1.0"
