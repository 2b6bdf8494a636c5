"""
PiùCane Gamification Engine

Core gamification for the PiùCane pet-care platform:
1. A deterministic 100-level progression table
2. XP awards with source, difficulty and user multipliers
3. Dynamic difficulty adjustment of missions from recent performance
4. Mission adaptation to difficulty tiers
5. A reward ledger for level-up rewards
"""

__version__ = "1.0.0"
