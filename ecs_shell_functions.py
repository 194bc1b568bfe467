import json
import logging
import random
import signal
import subprocess
import boto3
import botocore
import botocore.exceptions


REGION = 'eu-west-2'
SESSION_DOCUMENT = 'AWS-StartInteractiveCommand'
EXEC_COMMAND = 'sudo docker exec -it {} bash'

logger = logging.getLogger('ecs-shell')


class EcsShellError(Exception):
    """Base error for ecs-shell"""


class UsageError(EcsShellError):
    """Required arguments missing"""


class ConfigError(EcsShellError):
    """AWS configuration could not be loaded"""


class AuthError(EcsShellError):
    """Caller is not authenticated with AWS"""


class RetriesExhausted(EcsShellError):
    """Every connection attempt failed"""


class RetryableError(EcsShellError):
    """A lookup or session failure worth another attempt"""


class NoRunningTasks(RetryableError):
    pass


class DescribeFailed(RetryableError):
    pass


class NoHostInstances(RetryableError):
    pass


class ContainerNotFound(RetryableError):
    pass


class SessionLaunchFailed(RetryableError):
    pass


BOTO_ERRORS = (botocore.exceptions.ClientError, botocore.exceptions.BotoCoreError)


def _default_sigint():
    signal.signal(signal.SIGINT, signal.SIG_DFL)


def run_session(command: list) -> int:
    """Run the session with inherited stdio, the child keeps the default SIGINT"""
    return subprocess.Popen(command, preexec_fn=_default_sigint).wait()


def pick_uniform(candidates: list, rng=random):
    """Pick one candidate uniformly at random"""
    return candidates[rng.randrange(len(candidates))]


class EcsShellFunctions():
    """Resolve a container in an ECS service to an SSM session target"""

    def __init__(self, cluster: str, service: str, container: str, profile: str = None,
                 region: str = REGION, boto_session=None, rng=None, runner=run_session):
        self.cluster = cluster
        self.service = service
        self.container = container
        self.profile = profile
        self.region = region
        self.rng = rng or random.Random()
        self.runner = runner
        try:
            self.session = boto_session or boto3.Session(
                profile_name=profile or None, region_name=region)
            self.ecs_client = self.session.client('ecs')
            self.sts_client = self.session.client('sts')
        except botocore.exceptions.ProfileNotFound as err:
            raise ConfigError('Unable to load AWS config: {}'.format(err)) from err

    def _log(self, message, *args, level=logging.INFO):
        """Log through the ecs-shell logger"""
        logger.log(level, message, *args)

    def _cluster_kwargs(self) -> dict:
        """Leave the cluster out when unset so the default cluster is used"""
        if self.cluster:
            return {'cluster': self.cluster}
        return {}

    def validate_credentials(self) -> dict:
        """Check we can authenticate before touching ECS"""
        try:
            identity = self.sts_client.get_caller_identity()
        except BOTO_ERRORS as err:
            raise AuthError(
                'Unable to authenticate with AWS, please check you are logged in: {}'.format(err)
            ) from err
        self._log('Authenticated as ARN: %s (Account: %s, UserId: %s)',
                  identity.get('Arn'), identity.get('Account'), identity.get('UserId'))
        return identity

    def _describe_task(self, task_arn: str) -> dict:
        """Fetch the details of a single task"""
        kwargs = self._cluster_kwargs()
        kwargs['tasks'] = [task_arn]
        try:
            result = self.ecs_client.describe_tasks(**kwargs)
        except BOTO_ERRORS as err:
            raise DescribeFailed('Could not describe the ECS task {}: {}'.format(task_arn, err)) from err
        tasks = result.get('tasks', [])
        if not tasks:
            raise DescribeFailed('Could not describe the ECS task {}'.format(task_arn))
        return tasks[0]

    def get_ecs_task(self) -> tuple:
        """Pick a running task of the service, returns (task arn, container instance arn)"""
        kwargs = self._cluster_kwargs()
        kwargs['serviceName'] = self.service
        kwargs['desiredStatus'] = 'RUNNING'
        try:
            task_arns = self.ecs_client.list_tasks(**kwargs).get('taskArns', [])
        except BOTO_ERRORS as err:
            raise NoRunningTasks(
                'No running tasks found for service {}: {}'.format(self.service, err)
            ) from err
        if not task_arns:
            raise NoRunningTasks('No running tasks found for service {}'.format(self.service))
        task_arn = pick_uniform(task_arns, self.rng)
        task = self._describe_task(task_arn)
        container_instance_arn = task.get('containerInstanceArn')
        if not container_instance_arn:
            # Fargate tasks have no container instance to open a session on
            raise DescribeFailed('Task {} is not placed on a container instance'.format(task_arn))
        return task_arn, container_instance_arn

    def get_ec2_instance_id(self, container_instance_arn: str) -> str:
        """Look up the EC2 instance behind a container instance"""
        kwargs = self._cluster_kwargs()
        kwargs['containerInstances'] = [container_instance_arn]
        try:
            result = self.ecs_client.describe_container_instances(**kwargs)
        except BOTO_ERRORS as err:
            raise NoHostInstances('Could not describe container instance {}: {}'.format(
                container_instance_arn, err)) from err
        instances = result.get('containerInstances', [])
        if not instances:
            raise NoHostInstances('No container instances found for {}'.format(container_instance_arn))
        # A single arn goes in, so this only ever chooses between one
        instance = pick_uniform(instances, self.rng)
        instance_id = instance.get('ec2InstanceId')
        if not instance_id:
            raise NoHostInstances('Container instance {} has no EC2 instance id'.format(
                container_instance_arn))
        return instance_id

    def get_container_id(self, task_arn: str) -> str:
        """Find the docker runtime id of the named container in the task"""
        task = self._describe_task(task_arn)
        for container in task.get('containers', []):
            if container.get('name') == self.container:
                runtime_id = container.get('runtimeId')
                if not runtime_id:
                    # Not started yet, no docker container to exec into
                    raise ContainerNotFound('Container {} in task {} has no runtime id'.format(
                        self.container, task_arn))
                return runtime_id
        raise ContainerNotFound('No container named {} found in task {}'.format(self.container, task_arn))

    def build_session_command(self, instance_id: str, container_id: str) -> list:
        """Build the aws cli invocation for the session"""
        parameters = {'command': [EXEC_COMMAND.format(container_id)]}
        command = [
            'aws', 'ssm', 'start-session',
            '--target', instance_id,
            '--document-name', SESSION_DOCUMENT,
            '--parameters', json.dumps(parameters, separators=(',', ':')),
            '--region', self.region,
        ]
        if self.profile:
            command.extend(['--profile', self.profile])
        return command

    def start_ssm_session(self, instance_id: str, container_id: str):
        """Hand the terminal to an ssm session until it exits"""
        command = self.build_session_command(instance_id, container_id)
        self._log('Running: %s', ' '.join(command), level=logging.DEBUG)
        # Ctrl+c belongs to the session while it is up, not to us
        previous = signal.signal(signal.SIGINT, signal.SIG_IGN)
        try:
            status = self.runner(command)
        except OSError as err:
            raise SessionLaunchFailed('Could not run the aws cli: {}'.format(err)) from err
        finally:
            signal.signal(signal.SIGINT, previous)
        if status != 0:
            raise SessionLaunchFailed('Session exited with status {}'.format(status))
        return
