"""Container bootstrap entry-point for the Odoo Cloud Run image.

The stage helpers live in :mod:`entrypoint.entrypoint`; they are re-exported
here so that callers can simply ``import entrypoint``.
"""

from .entrypoint import (  # noqa: F401
    ENV_OPTIONS,
    STAGES,
    BootstrapEnv,
    EnvOption,
    build_init_command,
    build_server_command,
    database_present,
    ensure_database,
    gather_env,
    initialisation_lock,
    initialise_database,
    initialise_if_needed,
    main,
    needs_initialisation,
    render_configuration,
    run_bootstrap,
    serve,
    sync_custom_addons,
    validate_env,
    wait_for_database,
)
