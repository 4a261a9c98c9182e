"""Seismic I/O - source codecs, target encoders, validation and the conversion pipeline."""
