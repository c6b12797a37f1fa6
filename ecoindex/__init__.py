"""ecoindex: batch ecoacoustic index computation with checkpointed batches."""

__version__ = "0.1.0"
