"""
Recommendation Oracle Module

Asks an external model for a trade plan and normalises its answer.
The oracle only recommends; sizing, stop placement and the order
lifecycle remain the hard authority.
"""
