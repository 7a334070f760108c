"""shadowfuzz: schema-driven behavioral fuzzing and differential execution."""

__version__ = "0.1.0"
