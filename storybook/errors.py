"""Exceptions raised by the story pipeline and the billing coordinator."""


class StorybookError(Exception):
    """Base exception for all storybook errors."""


class PipelineError(StorybookError):
    """A pipeline stage failed; ``stage`` names the stage."""

    def __init__(self, stage: str, message: str):
        super().__init__(f"[{stage}] {message}")
        self.stage = stage


class MalformedGenerationError(PipelineError):
    """Generated text could not be decoded into the stage's expected shape."""

    def __init__(self, stage: str, message: str, raw: str | None = None):
        super().__init__(stage, message)
        self.raw = raw[:500] if raw else raw


class MissingReferenceError(MalformedGenerationError):
    def __init__(self, stage: str, name: str):
        super().__init__(stage, f"'{name}' has no entry in the entity catalog")
        self.name = name


class MediaGenerationError(PipelineError):
    """Fatal media failure for one scene. Aborts the whole story."""

    def __init__(self, scene_number: int, kind: str, message: str):
        super().__init__("media", f"scene {scene_number} {kind}: {message}")
        self.scene_number = scene_number
        self.kind = kind


class GeneratorError(StorybookError):
    """An external generator call failed or returned no usable output."""


class StoryNotFoundError(StorybookError):
    pass


class AssetRejectedError(StorybookError):
    """An asset violates the format or size constraints of its kind."""


class BillingError(StorybookError):
    pass


class AccountNotFoundError(BillingError):
    pass


class InsufficientCreditsError(BillingError):
    def __init__(self, account_id: int, balance: int, cost: int):
        super().__init__(
            f"Account {account_id} has {balance} credit(s); {cost} required"
        )
        self.account_id = account_id
        self.balance = balance
        self.cost = cost


class PersistenceError(BillingError):
    """The story transaction failed and was rolled back."""
