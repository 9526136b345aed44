"""
Heuristics that classify timeline columns and normalise the many timestamp
spellings found in forensic exports.
"""
