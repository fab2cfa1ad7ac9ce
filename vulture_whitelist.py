# Vulture whitelist file
# This file contains false positives that vulture incorrectly flags as dead code.
# These are typically framework-registered functions, Pydantic fields, pytest fixtures, etc.
#
# Usage: python3 -m vulture server/hostpulse vulture_whitelist.py

# =============================================================================
# FastAPI Route Handlers (registered via @router.get decorators)
# =============================================================================

health_check  # routes.py - GET /healthz
list_nodes  # routes.py - GET /api/v1/nodes
get_node  # routes.py - GET /api/v1/nodes/{node_id}
list_history_streams  # routes.py - GET /api/v1/nodes/{node_id}/history
get_history_stream  # routes.py - GET /api/v1/nodes/{node_id}/history/{stream}

# =============================================================================
# Application wiring
# =============================================================================

lifespan  # main.py - passed to FastAPI(lifespan=...)
run  # main.py - console script entry point (pyproject [project.scripts])

# =============================================================================
# Pydantic validators and settings (invoked by the framework)
# =============================================================================

_validate_primary_pattern  # config.py
_validate_history_capacity  # config.py
_parse_boot_time  # query_rows.py - OperatingSystemRow
_stringify_device_id  # query_rows.py - NetworkAdapterRow
_coerce_string_list  # query_rows.py - AdapterConfigurationRow
model_config  # config.py, query_rows.py, history.py

# =============================================================================
# Pydantic fields populated from CIM rows but only exposed through the API
# =============================================================================

instance_id  # query_rows.py - TeamRow / TeamMemberRow
caption  # query_rows.py - LogicalDiskRow
manufacturer  # models.py - Node
kernel_version  # models.py - Node
in_pps  # models.py - Interface
out_pps  # models.py - Interface
interface_count  # models.py - NodeSummary
volume_count  # models.py - NodeSummary
active_nodes  # models.py - HealthResponse

# =============================================================================
# Pytest fixtures
# =============================================================================

anyio_backend  # tests/conftest.py
fake_query_service  # tests/conftest.py
