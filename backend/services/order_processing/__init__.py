"""
Order processing stages split by responsibility.
External callers should keep importing from services.order_processing_service.
"""
