"""Exception types shared by the render pipeline, the store and the HTTP layer."""


class StoryverseError(Exception):
    pass


class ConfigurationError(StoryverseError, RuntimeError):
    """A required credential or service URL is not configured. Never retried."""


class ContractViolation(StoryverseError):
    """A remote response did not have the shape we asked for. Never retried."""


class AssetUnavailable(StoryverseError):
    """A generation step produced no usable media after exhausting retries."""


class InvalidTransition(StoryverseError):
    pass


class WizardError(StoryverseError):
    pass


class JobNotFound(StoryverseError, KeyError):
    def __init__(self, job_id: str):
        super().__init__(job_id)
        self.job_id = job_id

    def __str__(self):
        return f"job {self.job_id} not found"


class RenderInProgress(StoryverseError):
    pass


class CharacterNotFound(StoryverseError, KeyError):
    def __init__(self, character_id: str):
        super().__init__(character_id)
        self.character_id = character_id

    def __str__(self):
        return f"character {self.character_id} not found"
