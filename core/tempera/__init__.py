"""Tempera - utility-learning core for episodic agent memory.

Episodes of past work are ranked by similarity and by how useful they
have proven to be. Usefulness is learned from feedback, decays with
inactivity, and spreads to similar and temporally adjacent episodes.
"""

__version__ = "0.1.0"
