"""
Server services: the camera server composition root and connection history
"""
