"""VPC network infrastructure for a public Fargate service."""
import logging
from typing import Any, Dict, List, Optional, Set, Tuple

from fargate_deploy.aws.orchestration.results import CREATED, UPDATED, ResourceChange
from fargate_deploy.aws.utils.aws_clients import AWSClientManager
from fargate_deploy.descriptor import DeploymentDescriptor
from fargate_deploy.exceptions import ProviderError

logger = logging.getLogger(__name__)

MANAGED_BY = "fargate-deploy"
DEFAULT_ROUTE = "0.0.0.0/0"

# (protocol, from_port, to_port, source); source is an IPv4 or IPv6 CIDR,
# a security group id or a prefix list id
Rule = Tuple[str, Optional[int], Optional[int], str]


class VPCNetworkBuilder:
    """Builder for the VPC, subnets, routing and security group of one app.

    Every build_* step finds the resource by its tags, creates it when
    missing and reconciles drifted attributes. In dry-run mode only read
    calls are made and the would-be mutations are recorded.
    """

    def __init__(self, descriptor: DeploymentDescriptor, clients: AWSClientManager,
                 dry_run: bool = False):
        self.descriptor = descriptor
        self.ec2_client = clients.ec2
        self.dry_run = dry_run
        self.changes: List[ResourceChange] = []
        self.vpc_id: Optional[str] = None
        self.subnet_ids: List[str] = []
        self.internet_gateway_id: Optional[str] = None
        self.route_table_id: Optional[str] = None
        self.security_group_id: Optional[str] = None

    # Helpers

    def _name(self, suffix: str) -> str:
        return f"{self.descriptor.app_name}-{suffix}"

    def _tag_spec(self, resource_type: str, name: str) -> List[Dict[str, Any]]:
        return [{
            'ResourceType': resource_type,
            'Tags': [
                {'Key': 'Name', 'Value': name},
                {'Key': 'Project', 'Value': self.descriptor.app_name},
                {'Key': 'ManagedBy', 'Value': MANAGED_BY},
            ]
        }]

    def _project_filters(self, name: Optional[str] = None) -> List[Dict[str, Any]]:
        filters = [{'Name': 'tag:Project', 'Values': [self.descriptor.app_name]},
                   {'Name': 'tag:ManagedBy', 'Values': [MANAGED_BY]}]
        if name:
            filters.append({'Name': 'tag:Name', 'Values': [name]})
        return filters

    def _record(self, resource_type: str, resource_id: str, action: str) -> None:
        self.changes.append(ResourceChange(resource_type, resource_id, action))
        verb = "Would have" if self.dry_run else "Have"
        logger.info(f"{verb} {action} {resource_type}: {resource_id}")

    # Build steps

    def build_vpc(self) -> 'VPCNetworkBuilder':
        """Find or create the VPC and make sure DNS is enabled."""
        vpc_name = self._name("vpc")
        wanted_cidr = self.descriptor.network.vpc_cidr

        existing_vpc = self._find_existing_vpc(vpc_name)
        if existing_vpc:
            self.vpc_id = existing_vpc['VpcId']
            if existing_vpc.get('CidrBlock') != wanted_cidr:
                raise ProviderError(
                    operation="DescribeVpcs",
                    code="VpcCidrMismatch",
                    message=(f"VPC {self.vpc_id} has CIDR {existing_vpc.get('CidrBlock')} but "
                             f"{wanted_cidr} is desired; a VPC CIDR cannot change in place, "
                             f"destroy the deployment first"),
                    resource=vpc_name,
                )
            logger.info(f"Using existing VPC: {self.vpc_id}")
            self._ensure_dns_attributes()
            return self

        if self.dry_run:
            self._record('vpc', vpc_name, CREATED)
            return self

        response = self.ec2_client.create_vpc(
            CidrBlock=wanted_cidr,
            TagSpecifications=self._tag_spec('vpc', vpc_name)
        )
        self.vpc_id = response['Vpc']['VpcId']

        # One attribute per call is an API restriction
        self.ec2_client.modify_vpc_attribute(VpcId=self.vpc_id, EnableDnsSupport={'Value': True})
        self.ec2_client.modify_vpc_attribute(VpcId=self.vpc_id, EnableDnsHostnames={'Value': True})

        self._record('vpc', self.vpc_id, CREATED)
        return self

    def _ensure_dns_attributes(self) -> None:
        for attribute, key in (('enableDnsSupport', 'EnableDnsSupport'),
                               ('enableDnsHostnames', 'EnableDnsHostnames')):
            response = self.ec2_client.describe_vpc_attribute(VpcId=self.vpc_id, Attribute=attribute)
            if response.get(key, {}).get('Value'):
                continue
            if not self.dry_run:
                self.ec2_client.modify_vpc_attribute(VpcId=self.vpc_id, **{key: {'Value': True}})
            self._record('vpc_attribute', f"{self.vpc_id}/{attribute}", UPDATED)

    def build_internet_gateway(self) -> 'VPCNetworkBuilder':
        """Find or create an internet gateway attached to the VPC."""
        igw_name = self._name("igw")
        if self.vpc_id is None:
            self._record('internet_gateway', igw_name, CREATED)
            return self

        existing_igw = self._find_existing_internet_gateway()
        if existing_igw:
            self.internet_gateway_id = existing_igw['InternetGatewayId']
            logger.info(f"Using existing internet gateway: {self.internet_gateway_id}")
            return self

        if self.dry_run:
            self._record('internet_gateway', igw_name, CREATED)
            return self

        igw_response = self.ec2_client.create_internet_gateway(
            TagSpecifications=self._tag_spec('internet-gateway', igw_name)
        )
        self.internet_gateway_id = igw_response['InternetGateway']['InternetGatewayId']
        self.ec2_client.attach_internet_gateway(
            InternetGatewayId=self.internet_gateway_id,
            VpcId=self.vpc_id
        )
        self._record('internet_gateway', self.internet_gateway_id, CREATED)
        return self

    def build_subnets(self) -> 'VPCNetworkBuilder':
        """Create one subnet per descriptor CIDR, spread across availability zones."""
        placement = self.descriptor.network
        if self.vpc_id is None:
            for index, cidr in enumerate(placement.subnets):
                self._record('subnet', f"{self._name('subnet')}-{index + 1} ({cidr})", CREATED)
            return self

        existing = {s['CidrBlock']: s for s in self._find_existing_subnets()}
        zones: List[str] = []
        self.subnet_ids = []

        for index, cidr in enumerate(placement.subnets):
            subnet = existing.get(cidr)
            if subnet:
                subnet_id = subnet['SubnetId']
                if bool(subnet.get('MapPublicIpOnLaunch')) != placement.assign_public_ip:
                    if not self.dry_run:
                        self.ec2_client.modify_subnet_attribute(
                            SubnetId=subnet_id,
                            MapPublicIpOnLaunch={'Value': placement.assign_public_ip}
                        )
                    self._record('subnet', subnet_id, UPDATED)
                self.subnet_ids.append(subnet_id)
                continue

            subnet_name = f"{self._name('subnet')}-{index + 1}"
            if self.dry_run:
                self._record('subnet', f"{subnet_name} ({cidr})", CREATED)
                continue

            if not zones:
                zones = self._availability_zones()
            response = self.ec2_client.create_subnet(
                VpcId=self.vpc_id,
                CidrBlock=cidr,
                AvailabilityZone=zones[index % len(zones)],
                TagSpecifications=self._tag_spec('subnet', subnet_name)
            )
            subnet_id = response['Subnet']['SubnetId']
            if placement.assign_public_ip:
                self.ec2_client.modify_subnet_attribute(
                    SubnetId=subnet_id,
                    MapPublicIpOnLaunch={'Value': True}
                )
            self.subnet_ids.append(subnet_id)
            self._record('subnet', subnet_id, CREATED)

        return self

    def build_route_table(self) -> 'VPCNetworkBuilder':
        """Public route table: default route to the IGW, associated with every subnet."""
        rt_name = self._name("public-rt")
        if self.vpc_id is None:
            self._record('route_table', rt_name, CREATED)
            return self

        route_table = self._find_existing_route_table(rt_name)
        if route_table is None:
            if self.dry_run:
                self._record('route_table', rt_name, CREATED)
                return self
            response = self.ec2_client.create_route_table(
                VpcId=self.vpc_id,
                TagSpecifications=self._tag_spec('route-table', rt_name)
            )
            route_table = response['RouteTable']
            route_table.setdefault('Routes', [])
            route_table.setdefault('Associations', [])
            self._record('route_table', route_table['RouteTableId'], CREATED)
        else:
            logger.info(f"Using existing route table: {route_table['RouteTableId']}")

        self.route_table_id = route_table['RouteTableId']
        self._ensure_default_route(route_table)
        self._ensure_associations(route_table)
        return self

    def _ensure_default_route(self, route_table: Dict[str, Any]) -> None:
        if self.internet_gateway_id is None:
            self._record('route', f"{self.route_table_id}/{DEFAULT_ROUTE}", CREATED)
            return

        current = next((r for r in route_table.get('Routes', [])
                        if r.get('DestinationCidrBlock') == DEFAULT_ROUTE), None)
        if current and current.get('GatewayId') == self.internet_gateway_id:
            return

        if not self.dry_run:
            if current:
                self.ec2_client.replace_route(
                    RouteTableId=self.route_table_id,
                    DestinationCidrBlock=DEFAULT_ROUTE,
                    GatewayId=self.internet_gateway_id
                )
            else:
                self.ec2_client.create_route(
                    RouteTableId=self.route_table_id,
                    DestinationCidrBlock=DEFAULT_ROUTE,
                    GatewayId=self.internet_gateway_id
                )
        self._record('route', f"{self.route_table_id}/{DEFAULT_ROUTE}", UPDATED if current else CREATED)

    def _ensure_associations(self, route_table: Dict[str, Any]) -> None:
        associated = {a.get('SubnetId') for a in route_table.get('Associations', [])
                      if a.get('SubnetId')}
        for subnet_id in self.subnet_ids:
            if subnet_id in associated:
                continue
            if not self.dry_run:
                self.ec2_client.associate_route_table(
                    RouteTableId=self.route_table_id,
                    SubnetId=subnet_id
                )
            self._record('route_table_association', f"{self.route_table_id}/{subnet_id}", CREATED)

    def build_security_group(self) -> 'VPCNetworkBuilder':
        """Security group whose ingress matches the descriptor exactly."""
        sg_name = self.descriptor.security_group_name
        if self.vpc_id is None:
            self._record('security_group', sg_name, CREATED)
            return self

        existing_sg = self._find_existing_security_group(sg_name)
        if existing_sg is None:
            if self.dry_run:
                self._record('security_group', sg_name, CREATED)
                return self
            sg_response = self.ec2_client.create_security_group(
                GroupName=sg_name,
                Description=f"Ingress for {self.descriptor.app_name} Fargate tasks",
                VpcId=self.vpc_id,
                TagSpecifications=self._tag_spec('security-group', sg_name)
            )
            self.security_group_id = sg_response['GroupId']
            current_rules: Set[Rule] = set()
            self._record('security_group', self.security_group_id, CREATED)
        else:
            self.security_group_id = existing_sg['GroupId']
            current_rules = self._flatten_rules(existing_sg.get('IpPermissions', []))
            logger.info(f"Using existing security group: {sg_name} ({self.security_group_id})")

        desired_rules = {(r.protocol, r.port, r.port, r.cidr) for r in self.descriptor.ingress_rules}
        missing = sorted(desired_rules - current_rules, key=str)
        stale = sorted(current_rules - desired_rules, key=str)

        if missing:
            if not self.dry_run:
                self.ec2_client.authorize_security_group_ingress(
                    GroupId=self.security_group_id,
                    IpPermissions=[self._permission(rule) for rule in missing]
                )
            if existing_sg is not None:
                self._record('security_group_ingress', self.security_group_id, UPDATED)
        if stale:
            if not self.dry_run:
                self.ec2_client.revoke_security_group_ingress(
                    GroupId=self.security_group_id,
                    IpPermissions=[self._permission(rule) for rule in stale]
                )
            self._record('security_group_ingress', self.security_group_id, UPDATED)

        return self

    @staticmethod
    def _permission(rule: Rule) -> Dict[str, Any]:
        protocol, from_port, to_port, source = rule
        permission: Dict[str, Any] = {'IpProtocol': protocol}
        if source.startswith('sg-'):
            permission['UserIdGroupPairs'] = [{'GroupId': source}]
        elif source.startswith('pl-'):
            permission['PrefixListIds'] = [{'PrefixListId': source}]
        elif ':' in source:
            permission['Ipv6Ranges'] = [{'CidrIpv6': source}]
        else:
            permission['IpRanges'] = [{'CidrIp': source}]
        # All-traffic rules (protocol -1) carry no ports
        if from_port is not None:
            permission['FromPort'] = from_port
            permission['ToPort'] = to_port
        return permission

    @staticmethod
    def _flatten_rules(permissions: List[Dict[str, Any]]) -> Set[Rule]:
        """One Rule per source of every permission, whatever the source type."""
        rules = set()
        for permission in permissions:
            sources = ([r['CidrIp'] for r in permission.get('IpRanges', [])]
                       + [r['CidrIpv6'] for r in permission.get('Ipv6Ranges', [])]
                       + [p['GroupId'] for p in permission.get('UserIdGroupPairs', []) if p.get('GroupId')]
                       + [p['PrefixListId'] for p in permission.get('PrefixListIds', [])])
            for source in sources:
                rules.add((permission.get('IpProtocol'), permission.get('FromPort'),
                           permission.get('ToPort'), source))
        return rules

    def build(self) -> Dict[str, Any]:
        """Run every step in dependency order and return the network config."""
        (self.build_vpc()
             .build_internet_gateway()
             .build_subnets()
             .build_route_table()
             .build_security_group())
        return self.get_network_config()

    def get_network_config(self) -> Dict[str, Any]:
        return {
            'vpc_id': self.vpc_id,
            'subnet_ids': list(self.subnet_ids),
            'internet_gateway_id': self.internet_gateway_id,
            'route_table_id': self.route_table_id,
            'security_group_id': self.security_group_id,
            'assign_public_ip': self.descriptor.network.assign_public_ip,
        }

    # Helper methods for finding existing resources

    def _find_existing_vpc(self, name: str) -> Optional[Dict[str, Any]]:
        response = self.ec2_client.describe_vpcs(Filters=self._project_filters(name))
        vpcs = response.get('Vpcs', [])
        return vpcs[0] if vpcs else None

    def _find_existing_internet_gateway(self) -> Optional[Dict[str, Any]]:
        response = self.ec2_client.describe_internet_gateways(
            Filters=[{'Name': 'attachment.vpc-id', 'Values': [self.vpc_id]}]
        )
        gateways = response.get('InternetGateways', [])
        return gateways[0] if gateways else None

    def _find_existing_subnets(self) -> List[Dict[str, Any]]:
        response = self.ec2_client.describe_subnets(
            Filters=[{'Name': 'vpc-id', 'Values': [self.vpc_id]}]
        )
        return response.get('Subnets', [])

    def _find_existing_route_table(self, name: str) -> Optional[Dict[str, Any]]:
        response = self.ec2_client.describe_route_tables(
            Filters=[{'Name': 'vpc-id', 'Values': [self.vpc_id]},
                     {'Name': 'tag:Name', 'Values': [name]}]
        )
        tables = response.get('RouteTables', [])
        return tables[0] if tables else None

    def _find_existing_security_group(self, name: str) -> Optional[Dict[str, Any]]:
        response = self.ec2_client.describe_security_groups(
            Filters=[
                {'Name': 'group-name', 'Values': [name]},
                {'Name': 'vpc-id', 'Values': [self.vpc_id]}
            ]
        )
        groups = response.get('SecurityGroups', [])
        return groups[0] if groups else None

    def _availability_zones(self) -> List[str]:
        response = self.ec2_client.describe_availability_zones(
            Filters=[{'Name': 'state', 'Values': ['available']}]
        )
        zones = sorted(z['ZoneName'] for z in response.get('AvailabilityZones', []))
        if not zones:
            raise ProviderError("DescribeAvailabilityZones", "NoAvailabilityZones",
                                "no available zones in region")
        return zones
