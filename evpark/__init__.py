"""
EVPark - reservation and session policy engine for a shared EV charger fleet.

Layers:
1. domain - records, policy config, eligibility rules, error taxonomy
2. application - state transitions, reminder sweep, board projection, commands
3. infrastructure - table stores, clocks, locks, notifiers, demo seed
4. presentation - command line host
"""

__version__ = "1.0.0"
