"""Story-to-short-video backend"""
