"""
Race Rewards Backend Application

A backend service for token holder reward races that provides:
- Entry and end snapshots of top token holders per round
- Rank-tiered reward calculation with retention eligibility
- Retry and stuck-phase recovery for the snapshot scheduler
- REST API for races, rewards and payout claims
"""

__version__ = "0.1.0"
__author__ = "Race Rewards Team"
