"""
Authorization Service application package.
"""
