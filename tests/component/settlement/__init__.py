"""
Settlement Service Component Tests

Component tests for settlement_service testing the engines with an in-memory
repository, scripted gateways and a recording event bus.

Structure:
- conftest.py: Fixtures wiring the engine around the mocks
- mocks.py: In-memory repository, scripted gateways, recording event bus
- test_milestone_engine.py: Schedules, splits and the milestone state machine
- test_payment_orchestrator.py: Charges, confirmation and failure handling
- test_webhook_reconciler.py: Verification, matching and replay safety
- test_payouts_and_withdrawals.py: Fees, balances and bank transfers
- test_settlement_sweep.py: Scheduled recovery and auto-charge
- test_event_handlers.py: Campaign booking events
- test_settlement_api.py: HTTP surface and error mapping

Markers:
- @pytest.mark.component: Component test marker
- @pytest.mark.asyncio: Async test marker

Usage:
    pytest tests/component/settlement -v
"""
