"""
execgate - authorization engine for agent-requested command execution
"""

__version__ = "0.1.0"
__logo__ = "🛡️"
