"""
Errors raised by the run controls and stores
"""


class RunNotFoundError(LookupError):
    """No run with the given id"""

    def __init__(self, run_id: str) -> None:
        super().__init__(f"Run not found: {run_id}")
        self.run_id = run_id


class InvalidRunActionError(ValueError):
    """The requested control action does not apply to the run's current state"""
