import boto3


def find_security_groups(region: str, tag: str) -> list[str]:
    """Return ids of security groups whose name contains `tag`."""
    ec2 = boto3.client("ec2", region_name=region)
    response = ec2.describe_security_groups(
        Filters=[{"Name": "group-name", "Values": [f"*{tag}*"]}],
    )
    return [sg["GroupId"] for sg in response.get("SecurityGroups", [])]


def list_ingress_rules(region: str, sg_id: str) -> list[dict]:
    """Flatten a group's ingress permissions to one dict per (port range, CIDR)."""
    ec2 = boto3.client("ec2", region_name=region)
    sg = ec2.describe_security_groups(GroupIds=[sg_id])["SecurityGroups"][0]
    rules = []
    for perm in sg.get("IpPermissions", []):
        for ip_range in perm.get("IpRanges", []):
            rules.append({
                "group_id": sg_id,
                "protocol": perm.get("IpProtocol", ""),
                "from_port": perm.get("FromPort"),
                "to_port": perm.get("ToPort"),
                "cidr": ip_range.get("CidrIp", ""),
                "description": ip_range.get("Description", ""),
            })
    return rules


def allow_ingress(
    region: str, sg_id: str, port: int, cidr: str, protocol: str = "tcp",
    description: str = "psm tunnel access",
) -> bool:
    """Add an ingress rule unless an identical one exists. Returns True if added."""
    for rule in list_ingress_rules(region, sg_id):
        if (rule["protocol"] == protocol and rule["from_port"] == port
                and rule["to_port"] == port and rule["cidr"] == cidr):
            return False
    ec2 = boto3.client("ec2", region_name=region)
    ec2.authorize_security_group_ingress(
        GroupId=sg_id,
        IpPermissions=[{
            "IpProtocol": protocol, "FromPort": port, "ToPort": port,
            "IpRanges": [{"CidrIp": cidr, "Description": description}],
        }],
    )
    return True
