"""In-memory AWS provider mock for integration testing.

Key Features:
- Shared in-memory state behind any number of provider instances
- Realistic absence idioms (empty listing vs not-found error)
- Call recording per provider instance for idempotency and ordering checks
- Fault injection for create, update, delete, describe and sub-resources

Usage:
    from aws_mock import MockProvider, MockProviderState

    state = MockProviderState()
    sequencer = Sequencer(context, StackSpec(), lambda: MockProvider(state))
    summary = await sequencer.provision()
    assert state.count("create") == 0
"""

from .context import MockAwsContext, mock_aws_context
from .resources import MockCall, MockProvider, MockProviderState, MockResource

__all__ = [
    "MockAwsContext",
    "MockCall",
    "MockProvider",
    "MockProviderState",
    "MockResource",
    "mock_aws_context",
]
