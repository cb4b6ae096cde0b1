"""
Lambda function entry point for AWS Lambda deployments.

Schedule it every minute (for example with an EventBridge rule) to run one
reconciliation cycle per invocation.
"""

from reconciler.common.logger import setup_logging

setup_logging()

from reconciler.main import lambda_handler


# The handler is specified in the Lambda configuration as "lambda_function.handler"
def handler(event, context):
    """
    AWS Lambda function handler that delegates to the main lambda_handler.

    Args:
        event: AWS Lambda event object
        context: AWS Lambda context object

    Returns:
        Response from the main lambda_handler
    """
    return lambda_handler(event, context)
