"""
RiskWatch Clinical State-Change Orchestrator
============================================

Watches a patient's clinical record for changes, recomputes derived risk
state, detects meaningful transitions (risk escalation or improvement, onset
of a diagnosable condition), and produces the durable follow-up work items a
clinician needs to see -- without duplicating work when the same change is
delivered more than once.

DISCLAIMER: This software is not a medical device.  Detected transitions,
diagnosis candidates, and drafted treatment protocols are decision-support
artifacts that require confirmation by a licensed clinician before any
action is taken.
"""

__version__ = "0.1.0"
