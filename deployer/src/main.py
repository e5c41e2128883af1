#!/usr/bin/env python3

"""
main.py - Build the Odoo image and deploy it to Google Cloud Run.

Usage: odoo-deploy [prod|staging|both] [--dry-run]
                   [--prod-domain DOMAIN] [--staging-domain DOMAIN]

Every step shells out to the ``gcloud`` and ``docker`` CLIs.  The run is
fail-fast: the first failing command aborts the whole deployment, and the
prerequisite checks run before any mutating call.

History:
    2025-03-02: Initial creation, replacing deploy-to-cloud-run.sh
"""

import argparse
import os
import signal
import subprocess
import sys
import time
from dataclasses import dataclass, field
from types import FrameType
from typing import Dict, List, Optional, Tuple

import requests

from tools.src.errors import BootstrapError, CommandError, PreconditionError

SELECTORS: Tuple[str, ...] = ('prod', 'staging', 'both')

# Fixed per-environment derivations: image tag, addons branch.
ENVIRONMENTS: Dict[str, Dict[str, str]] = {
    'staging': {'tag': 'staging', 'branch': 'staging'},
    'prod': {'tag': 'latest', 'branch': 'main'},
}

SERVICE_ACCOUNT_ROLES: Tuple[str, ...] = (
    'roles/cloudsql.client',
    'roles/secretmanager.secretAccessor',
)

SECRETS: Dict[str, str] = {
    'DB_PASSWORD': 'odoo-db-password:latest',
    'ADMIN_PASSWORD': 'odoo-admin-password:latest',
}

# Colors for output
RED = '\033[0;31m'
GREEN = '\033[0;32m'
YELLOW = '\033[1;33m'
NC = '\033[0m'

DRY_RUN = False


def echo_info(message: str) -> None:
    print(f'{GREEN}[INFO]{NC} {message}', flush=True)


def echo_warn(message: str) -> None:
    print(f'{YELLOW}[WARN]{NC} {message}', flush=True)


def echo_error(message: str) -> None:
    print(f'{RED}[ERROR]{NC} {message}', flush=True)


@dataclass(frozen=True)
class DeploySettings:
    """Project-wide deployment settings."""

    project_id: str = 'summit-paragliding'
    region: str = 'us-central1'
    db_instance: str = 'summit-paragliding-db'
    repo_name: str = 'summit-paragliding-odoo'
    name_prefix: str = 'summit-paragliding'
    service_account_id: str = 'odoo-cloud-run'
    registry: str = 'gcr.io'
    db_user: str = 'odoo'
    addons_repo: str = 'https://github.com/Jay-Pel/Summit-Paragliding.git'
    build_context: str = '.'
    build_id: str = ''
    # Fixed resource shape of every service.
    memory: str = '2Gi'
    cpu: str = '2'
    timeout: int = 3600
    concurrency: int = 1000
    min_instances: int = 1
    max_instances: int = 10
    secrets: Dict[str, str] = field(default_factory=lambda: dict(SECRETS))

    @property
    def service_account(self) -> str:
        return f'{self.service_account_id}@{self.project_id}.iam.gserviceaccount.com'

    @property
    def cloudsql_connection(self) -> str:
        return f'{self.project_id}:{self.region}:{self.db_instance}'

    @classmethod
    def from_env(cls, env: Optional[Dict[str, str]] = None) -> 'DeploySettings':
        """Build settings from ``DEPLOY_*`` variables, keeping defaults for unset ones."""
        src = os.environ if env is None else env
        mapping = {
            'project_id': 'DEPLOY_PROJECT_ID',
            'region': 'DEPLOY_REGION',
            'db_instance': 'DEPLOY_DB_INSTANCE',
            'repo_name': 'DEPLOY_REPO_NAME',
            'name_prefix': 'DEPLOY_NAME_PREFIX',
            'service_account_id': 'DEPLOY_SERVICE_ACCOUNT_ID',
            'registry': 'DEPLOY_REGISTRY',
            'db_user': 'DEPLOY_DB_USER',
            'addons_repo': 'DEPLOY_ADDONS_REPO',
            'build_context': 'DEPLOY_BUILD_CONTEXT',
            'build_id': 'DEPLOY_BUILD_ID',
        }
        overrides = {attr: src[var] for attr, var in mapping.items() if src.get(var)}
        return cls(**overrides)


@dataclass(frozen=True)
class EnvironmentTarget:
    """Everything derived from one environment name."""

    environment: str
    image_tag: str
    db_name: str
    service_name: str
    addons_branch: str

    @classmethod
    def for_environment(cls, environment: str, settings: DeploySettings) -> 'EnvironmentTarget':
        if environment not in ENVIRONMENTS:
            raise ValueError(f'unknown environment: {environment}')
        derived = ENVIRONMENTS[environment]
        return cls(
            environment=environment,
            image_tag=derived['tag'],
            db_name=f'{settings.name_prefix}-{environment}',
            service_name=f'{settings.name_prefix}-odoo-{environment}',
            addons_branch=derived['branch'],
        )


def plan_targets(selector: str, settings: DeploySettings) -> List[EnvironmentTarget]:
    """Return the targets implied by *selector*; staging deploys before prod."""
    if selector == 'both':
        names = ['staging', 'prod']
    elif selector in ENVIRONMENTS:
        names = [selector]
    else:
        raise ValueError(f'unknown environment selector: {selector}')
    return [EnvironmentTarget.for_environment(name, settings) for name in names]


def run_command(command: List[str], capture: bool = False, mutating: bool = True) -> str:
    """Run a CLI command, raising CommandError if it fails.

    Args:
        command: List of command arguments to execute.
        capture: Return the command's stdout instead of streaming it.
        mutating: Whether the command changes remote state; such commands are
            only printed in dry-run mode.

    Returns:
        The captured stdout (stripped), or an empty string.

    Raises:
        CommandError: If the command exits non-zero or cannot be found.
    """
    if DRY_RUN and mutating:
        print(f'+ {" ".join(command)}', flush=True)
        return ''
    try:
        result = subprocess.run(
            command, check=True, text=True,
            stdout=subprocess.PIPE if capture else None,
            stderr=subprocess.PIPE if capture else None,
        )
    except subprocess.CalledProcessError as err:
        raise CommandError(command, err.returncode, err.stderr or '') from err
    except FileNotFoundError as err:
        raise CommandError(command, 127, f'{command[0]} not found') from err
    return (result.stdout or '').strip() if capture else ''


def check_prerequisites() -> None:
    """Verify gcloud authentication and a running Docker engine.

    Raises:
        PreconditionError: If either prerequisite is missing.
    """
    echo_info('Checking prerequisites...')

    try:
        account = run_command(
            ['gcloud', 'auth', 'list', '--filter=status:ACTIVE', '--format=value(account)'],
            capture=True, mutating=False,
        )
    except CommandError as err:
        raise PreconditionError(f'gcloud is not usable: {err}') from err
    if not account:
        raise PreconditionError("Not authenticated with gcloud. Run 'gcloud auth login'")

    try:
        run_command(['docker', 'info'], capture=True, mutating=False)
    except CommandError as err:
        raise PreconditionError('Docker is not running. Please start Docker.') from err

    echo_info(f'Prerequisites check passed! (account: {account.splitlines()[0]})')


def _granted_roles(settings: DeploySettings) -> List[str]:
    output = run_command(
        [
            'gcloud', 'projects', 'get-iam-policy', settings.project_id,
            '--flatten=bindings[].members',
            f'--filter=bindings.members:serviceAccount:{settings.service_account}',
            '--format=value(bindings.role)',
        ],
        capture=True, mutating=False,
    )
    return [line.strip() for line in output.splitlines() if line.strip()]


def ensure_service_account(settings: DeploySettings) -> List[str]:
    """Create the deployment identity and grant missing roles.

    Returns:
        The roles granted by this call (empty when everything already existed).
    """
    echo_info('Ensuring service account for Cloud Run...')

    try:
        run_command(
            ['gcloud', 'iam', 'service-accounts', 'describe', settings.service_account],
            capture=True, mutating=False,
        )
    except CommandError:
        run_command([
            'gcloud', 'iam', 'service-accounts', 'create', settings.service_account_id,
            '--project', settings.project_id,
            '--display-name=Odoo Cloud Run Service Account',
            '--description=Service account for Odoo running on Cloud Run',
        ])
    else:
        echo_info('Service account already exists.')

    existing = set(_granted_roles(settings))
    granted: List[str] = []
    for role in SERVICE_ACCOUNT_ROLES:
        if role in existing:
            echo_info(f'Role {role} already granted.')
            continue
        echo_info(f'Granting {role} to service account...')
        run_command([
            'gcloud', 'projects', 'add-iam-policy-binding', settings.project_id,
            f'--member=serviceAccount:{settings.service_account}',
            f'--role={role}',
            '--condition=None',
        ])
        granted.append(role)
    return granted


def image_url(target: EnvironmentTarget, settings: DeploySettings) -> str:
    """Return the unique image reference for *target*."""
    build_id = settings.build_id or time.strftime('%Y%m%d%H%M%S', time.gmtime())
    return f'{settings.registry}/{settings.project_id}/{settings.repo_name}:{target.image_tag}-{build_id}'


def build_and_push_image(target: EnvironmentTarget, settings: DeploySettings) -> str:
    """Build and push the image for *target*; returns the pushed reference."""
    url = image_url(target, settings)
    echo_info(f'Building Docker image for tag: {url.rsplit(":", 1)[1]}')

    run_command(['gcloud', 'auth', 'configure-docker', settings.registry, '--quiet'])
    run_command(['docker', 'build', '-t', url, settings.build_context])

    echo_info('Pushing image to the container registry...')
    run_command(['docker', 'push', url])
    return url


def deploy_command(target: EnvironmentTarget, url: str, settings: DeploySettings) -> List[str]:
    """Return the ``gcloud run deploy`` command for *target*."""
    env_vars = {
        'ODOO_ENVIRONMENT': target.environment,
        'DB_HOST': f'/cloudsql/{settings.cloudsql_connection}',
        'DB_NAME': target.db_name,
        'DB_USER': settings.db_user,
        'CUSTOM_ADDONS_REPO': settings.addons_repo,
        'CUSTOM_ADDONS_BRANCH': target.addons_branch,
    }
    return [
        'gcloud', 'run', 'deploy', target.service_name,
        f'--image={url}',
        '--platform=managed',
        f'--project={settings.project_id}',
        f'--region={settings.region}',
        '--allow-unauthenticated',
        f'--service-account={settings.service_account}',
        f'--memory={settings.memory}',
        f'--cpu={settings.cpu}',
        f'--timeout={settings.timeout}',
        f'--concurrency={settings.concurrency}',
        f'--min-instances={settings.min_instances}',
        f'--max-instances={settings.max_instances}',
        '--set-env-vars=' + ','.join(f'{k}={v}' for k, v in env_vars.items()),
        '--set-secrets=' + ','.join(f'{k}={v}' for k, v in settings.secrets.items()),
        f'--add-cloudsql-instances={settings.cloudsql_connection}',
        '--execution-environment=gen2',
    ]


def deploy_service(target: EnvironmentTarget, url: str, settings: DeploySettings) -> str:
    """Deploy *url* as the service of *target*; returns the service URL."""
    echo_info(f'Deploying {target.environment} environment to Cloud Run...')
    run_command(deploy_command(target, url, settings))

    if DRY_RUN:
        # The service does not exist yet in a dry run.
        service_url = f'https://{target.service_name}.run.app'
    else:
        service_url = run_command(
            [
                'gcloud', 'run', 'services', 'describe', target.service_name,
                f'--project={settings.project_id}',
                f'--region={settings.region}',
                '--format=value(status.url)',
            ],
            capture=True, mutating=False,
        )
    echo_info(f'{target.environment} environment deployed successfully!')
    echo_info(f'Service URL: {service_url}')
    return service_url


def setup_custom_domain(target: EnvironmentTarget, domain: str, settings: DeploySettings) -> None:
    """Map *domain* to the service of *target*."""
    echo_info(f'Setting up custom domain: {domain}')
    run_command([
        'gcloud', 'beta', 'run', 'domain-mappings', 'create',
        f'--service={target.service_name}',
        f'--domain={domain}',
        f'--project={settings.project_id}',
        f'--region={settings.region}',
    ])


def verify_endpoint(service_url: str, timeout: float = 30.0) -> bool:
    """Check the liveness endpoint of a freshly deployed service.

    A failure is only reported: the first boot of a new database may take
    longer than the check.
    """
    url = service_url.rstrip('/') + '/web/health'
    try:
        response = requests.get(url, timeout=timeout)
        response.raise_for_status()
    except requests.RequestException as err:
        echo_warn(f'Health check of {url} failed: {err}')
        return False
    echo_info(f'Health check of {url} passed.')
    return True


def deploy(
    selector: str,
    settings: DeploySettings,
    domains: Optional[Dict[str, str]] = None,
) -> Dict[str, str]:
    """Run the whole deployment for *selector*.

    Returns:
        Mapping of environment name to service URL.
    """
    targets = plan_targets(selector, settings)
    domains = domains or {}

    check_prerequisites()
    ensure_service_account(settings)

    urls: Dict[str, str] = {}
    for target in targets:
        url = build_and_push_image(target, settings)
        urls[target.environment] = deploy_service(target, url, settings)
        if domains.get(target.environment):
            setup_custom_domain(target, domains[target.environment], settings)
        if not DRY_RUN:
            verify_endpoint(urls[target.environment])
    return urls


def signal_handler(signum: int, frame: Optional[FrameType]) -> None:
    """Handle system signals.

    Args:
        signum: The signal number received.
        frame: The current stack frame (unused).
    """
    echo_error(f'Received signal {signum}, aborting deployment.')
    sys.exit(1)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(prog='odoo-deploy', description='Deploy Odoo to Google Cloud Run')
    parser.add_argument('environment', nargs='?', default='both', choices=SELECTORS)
    parser.add_argument('--dry-run', action='store_true', help='print commands instead of running them')
    parser.add_argument('--prod-domain', default='', help='custom domain for production')
    parser.add_argument('--staging-domain', default='', help='custom domain for staging')
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> None:
    """Command line entry point."""
    global DRY_RUN

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    args = parse_args(argv)
    DRY_RUN = args.dry_run
    settings = DeploySettings.from_env()

    echo_info('Starting Odoo v18.0 deployment to Google Cloud Run')
    echo_info(f'Project: {settings.project_id}')
    echo_info(f'Region: {settings.region}')
    echo_info(f'Environment: {args.environment}')

    try:
        deploy(
            args.environment,
            settings,
            domains={'prod': args.prod_domain, 'staging': args.staging_domain},
        )
    except BootstrapError as err:
        echo_error(str(err))
        sys.exit(1)

    echo_info('Deployment completed successfully!')


if __name__ == '__main__':
    main()
