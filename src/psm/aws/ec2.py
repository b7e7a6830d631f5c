import boto3
from botocore.exceptions import ClientError

from psm.errors import TransientProviderError


# Spot launch rejections that mean "try another zone/type/later".
CAPACITY_ERROR_CODES = {
    "InsufficientInstanceCapacity",
    "SpotMaxPriceTooLow",
    "MaxSpotInstanceCountExceeded",
    "Unsupported",
    "InsufficientCapacity",
}


def is_client_error(exc: ClientError, code: str) -> bool:
    return exc.response["Error"]["Code"] == code


def get_image_id(region: str, parameter: str) -> str:
    """Resolve a public AMI id from an SSM parameter (e.g. Canonical's Ubuntu feed)."""
    ssm = boto3.client("ssm", region_name=region)
    response = ssm.get_parameter(Name=parameter)
    return response["Parameter"]["Value"]


def list_key_names(region: str, key_name: str | None = None) -> list[str]:
    ec2 = boto3.client("ec2", region_name=region)
    kwargs = {}
    if key_name:
        kwargs["Filters"] = [{"Name": "key-name", "Values": [key_name]}]
    response = ec2.describe_key_pairs(**kwargs)
    return [k["KeyName"] for k in response.get("KeyPairs", [])]


def launch_spot_instance(
    region: str, zone: str, image_id: str, instance_type: str, key_name: str,
    security_group_ids: list[str], slot_name: str = "", disk_gb: int = 40,
) -> str:
    ec2 = boto3.client("ec2", region_name=region)
    kwargs = {
        "ImageId": image_id, "InstanceType": instance_type,
        "KeyName": key_name, "SecurityGroupIds": security_group_ids,
        "MinCount": 1, "MaxCount": 1,
        "Placement": {"AvailabilityZone": zone},
        "InstanceMarketOptions": {
            "MarketType": "spot",
            "SpotOptions": {
                "SpotInstanceType": "one-time",
                "InstanceInterruptionBehavior": "terminate",
            },
        },
        "BlockDeviceMappings": [{
            "DeviceName": "/dev/sda1",
            "Ebs": {"VolumeSize": disk_gb, "VolumeType": "gp3", "DeleteOnTermination": True},
        }],
        "TagSpecifications": [{
            "ResourceType": "instance",
            "Tags": [
                {"Key": "Name", "Value": f"psm-{slot_name}"},
                {"Key": "psm:slot", "Value": slot_name},
            ],
        }],
    }
    try:
        response = ec2.run_instances(**kwargs)
    except ClientError as e:
        code = e.response["Error"]["Code"]
        if code in CAPACITY_ERROR_CODES:
            raise TransientProviderError(
                f"{instance_type} in {zone} rejected: {code}"
            ) from e
        raise
    return response["Instances"][0]["InstanceId"]


def describe_instance(region: str, instance_id: str) -> dict:
    """Return {"state": ..., "public_ip": ...} for one instance."""
    ec2 = boto3.client("ec2", region_name=region)
    response = ec2.describe_instances(InstanceIds=[instance_id])
    reservations = response.get("Reservations", [])
    if not reservations or not reservations[0].get("Instances"):
        return {"state": "unknown", "public_ip": None}
    instance = reservations[0]["Instances"][0]
    return {
        "state": instance["State"]["Name"],
        "public_ip": instance.get("PublicIpAddress"),
    }


def terminate_instance(region: str, instance_id: str) -> None:
    ec2 = boto3.client("ec2", region_name=region)
    try:
        ec2.terminate_instances(InstanceIds=[instance_id])
    except ClientError as e:
        # Already gone is the outcome we wanted
        if not is_client_error(e, "InvalidInstanceID.NotFound"):
            raise
