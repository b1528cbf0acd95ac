# flexfuse/containerd/credentials.py
import base64
from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from flexfuse.containerd.errors import ImagePullError
from flexfuse.logpkg.log_flex import LogFlex, log_to_file

logger = LogFlex()

ECR_USER = "AWS"


class EcrCredentialHelper:
    """Registry secret for ECR hosted helper images, read through boto3."""

    @log_to_file(logger)
    def __init__(self, region_name: str = "us-east-2", session: Optional[boto3.Session] = None):
        self.region_name = region_name
        self.session = session or boto3.Session(region_name=region_name)

    def available(self) -> bool:
        return self.session.get_credentials() is not None

    @log_to_file(logger)
    def password(self) -> str:
        try:
            ecr_client = self.session.client('ecr', region_name=self.region_name)
            response = ecr_client.get_authorization_token()
        except (BotoCoreError, ClientError) as err:
            raise ImagePullError(f"Error retrieving ECR password: {err}") from err

        auth_data = response.get('authorizationData') or []
        if not auth_data:
            raise ImagePullError("ECR returned no authorization data")

        # token is base64("AWS:<password>")
        token = base64.b64decode(auth_data[0]['authorizationToken']).decode('utf-8')
        user, _, secret = token.partition(":")
        if user != ECR_USER or not secret:
            raise ImagePullError("Unexpected ECR authorization token format")
        return secret.strip()

    def user_argument(self) -> str:
        return f"{ECR_USER}:{self.password()}"
