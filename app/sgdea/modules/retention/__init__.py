"""
Retention module: CCD (classification chart), TRD (retention schedules) and
the per-node retention entries that drive final disposition.
"""
