"""AWS API Mock for Integration Testing.

This module provides a mock implementation of the EC2, S3 and STS APIs
the operator uses, enabling integration testing without AWS connectivity.

Key Features:
- In-memory state for endpoint services, buckets and object versions
- Scripted ServiceState transitions (Pending → Available, Deleting → gone)
- Call log per operation for asserting on exact request payloads
- Error injection with real botocore ClientErrors
- A fake clock so polling never sleeps

Usage:
    from aws_mock import FakeClock, MockAwsContext

    with MockAwsContext() as aws:
        clock = FakeClock()
        reconciler = Reconciler(config, store=MemoryStateStore(),
                                sleep=clock.sleep, clock=clock.clock)
        reconciler.apply(manifests)

        # Assert on mock state
        assert aws.ec2.calls_to("ModifyVpcEndpointServicePermissions") == [...]
"""

from .clock import FakeClock
from .context import MockAwsContext, MockSession, MockStsClient, mock_aws_context
from .ec2 import MockEc2Client, MockEc2State, MockEndpointService
from .errors import FailureInjector, client_error
from .s3 import MockS3Client, MockS3State

__all__ = [
    "FailureInjector",
    "FakeClock",
    "MockAwsContext",
    "MockEc2Client",
    "MockEc2State",
    "MockEndpointService",
    "MockS3Client",
    "MockS3State",
    "MockSession",
    "MockStsClient",
    "client_error",
    "mock_aws_context",
]
