"""
Open an interactive shell in a container of an ECS service via SSM

Resolves a running task, its EC2 host and the docker runtime id of the
container, then runs `aws ssm start-session` against the host.
"""

import argparse
import logging
import os
import sys
import time

from ecs_shell_functions import (
    EcsShellError, EcsShellFunctions, RetriesExhausted, RetryableError, UsageError, logger
)

MAX_RETRIES = 3
BACKOFF_SECONDS = 5
USAGE = ('Usage: ecs-shell --cluster <cluster-name> --service <service-name> '
         '--container <container-name> [--profile <aws-profile>]')


class EcsShell(EcsShellFunctions):
    """Resolve a container and connect to it, retrying with a fresh task each time"""

    def __init__(self, *args, sleep=time.sleep, **kwargs):
        super().__init__(*args, **kwargs)
        self.sleep = sleep

    def _attempt(self, attempt: int):
        """Resolve task, host and container from scratch, then start the session"""
        task_arn, container_instance_arn = self.get_ecs_task()
        self._log('Found task ARN: %s', task_arn)
        instance_id = self.get_ec2_instance_id(container_instance_arn)
        self._log('Found EC2 instance ID: %s', instance_id)
        container_id = self.get_container_id(task_arn)
        self._log('Found container ID: %s', container_id)
        self._log('Attempting to start SSM session (Attempt %d/%d)...', attempt, MAX_RETRIES)
        self.start_ssm_session(instance_id, container_id)

    def connect(self):
        """Connect to the container, up to MAX_RETRIES attempts"""
        for attempt in range(1, MAX_RETRIES + 1):
            try:
                self._attempt(attempt)
            except RetryableError as err:
                if attempt == MAX_RETRIES:
                    raise RetriesExhausted('Failed to start SSM session after {} attempts: {}'.format(
                        MAX_RETRIES, err)) from err
                self._log('%s: %s. Retrying with a new ECS task in %ds...',
                          type(err).__name__, err, BACKOFF_SECONDS, level=logging.WARNING)
                self.sleep(BACKOFF_SECONDS)
                continue
            self._log('SSM session ended successfully.')
            return


def configure_logging(level: str = 'INFO'):
    """Log to stderr with timestamps, unknown levels fall back to INFO"""
    level = level.upper()
    if not isinstance(logging.getLevelName(level), int):
        level = 'INFO'
    logging.basicConfig(
        level=level,
        format='%(asctime)s %(levelname)s %(message)s',
        stream=sys.stderr,
    )


def parse_args(argv: list) -> argparse.Namespace:
    """Parse flags, each falling back to its environment variable"""
    parser = argparse.ArgumentParser(
        prog='ecs-shell',
        description='Open a shell in a container of an ECS service via SSM',
    )
    parser.add_argument('--cluster', default=os.getenv('CLUSTER', ''),
                        help='The ECS cluster name (default cluster when empty)')
    parser.add_argument('--service', default=os.getenv('SERVICE', ''),
                        help='The ECS service name')
    parser.add_argument('--container', default=os.getenv('CONTAINER', ''),
                        help='The container name')
    parser.add_argument('--profile', default=os.getenv('AWS_PROFILE', ''),
                        help='Optional AWS profile name')
    args = parser.parse_args(argv)
    if not args.service or not args.container:
        raise UsageError(USAGE)
    return args


def main(argv=None) -> int:
    """Entry point, returns the process exit status"""
    configure_logging(os.getenv('LOG_LEVEL', 'INFO'))
    try:
        args = parse_args(sys.argv[1:] if argv is None else argv)
        shell = EcsShell(args.cluster, args.service, args.container, profile=args.profile or None)
        shell.validate_credentials()
        shell.connect()
    except EcsShellError as err:
        logger.critical('%s', err)
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
