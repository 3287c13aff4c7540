"""
Test Suite for mx-tester

Test Structure:
- unit/test_config.py: Configuration loading and validation tests
- unit/test_homeserver.py: homeserver.yaml overlay tests
- unit/test_scripts.py: Script execution engine tests
- unit/test_docker_manager.py: Container lifecycle tests (mocked Docker)
- unit/test_matrix_client.py: Homeserver HTTP client tests
- unit/test_provisioning.py: Fixture provisioning tests (in-memory homeserver)
- unit/test_orchestrator.py: Phase orchestration tests
- unit/test_cli.py: Command-line front-end tests
- integration/: End-to-end tests against a real Docker daemon

Running Tests:
    pytest                    # Run all tests
    pytest -m unit            # Unit tests only
    pytest -m "not docker"    # Skip tests that need Docker
"""
