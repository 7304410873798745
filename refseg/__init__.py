"""Reference-segmentation construction and evaluation.

Fuses several raters' label volumes into a consensus reference (majority
vote or STAPLE) and scores segmentations against it with overlap and
surface-distance measures.
"""
