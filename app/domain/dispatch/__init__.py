"""
Dispatch Domain

Broadcast matching of orders to pharmacies and delivery partners: distance ranking,
phased notification, candidate responses and timed escalation.
"""
