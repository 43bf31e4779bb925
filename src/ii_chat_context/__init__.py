"""
ii-chat-context: branching LLM conversation trees and request context assembly.
"""

__version__ = "0.1.0"
