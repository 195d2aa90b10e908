"""
hotelcore

Shared infrastructure for the hotel services: settings, database, logging, redis.
"""
