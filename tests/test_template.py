"""Tests for template module (loading, validation, rendering)."""

import json
import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from intrinsics import pseudo_parameters
from template import (
    Parameter,
    ParameterError,
    ParseError,
    Template,
    TemplateLoader,
    TemplateReferenceError,
    load_template,
    parse_template_text,
)

PSEUDO = pseudo_parameters('static-website', 'us-east-1', '123456789012')

SITE_PARAMS = {'HostedZoneId': 'Z123', 'DomainName': 'www.example.org'}


def _minimal(**sections):
    data = {'Resources': {'Bucket': {'Type': 'AWS::S3::Bucket'}}}
    data.update(sections)
    return data


class TestStaticWebsiteTemplate:
    """Tests against the shipped static website template."""

    @pytest.fixture
    def template(self, static_website_path):
        return TemplateLoader().load_file(static_website_path)

    def test_loads_all_resources(self, template):
        assert list(template.resources) == [
            'SiteBucket', 'SiteBucketPolicy', 'SiteDNSRecord', 'Certificate',
            'RewriteFunction', 'CloudFrontDistribution', 'CloudFrontOAI',
            'NewUser', 'UserAccessKey',
        ]
        assert template.description.startswith('Infrastructure for hosting')

    def test_parameters(self, template):
        assert list(template.parameters) == ['HostedZoneId', 'DomainName', 'NewUserName', 'AppendIndexHtml']
        assert template.parameters['HostedZoneId'].is_required
        assert template.parameters['DomainName'].is_required
        assert template.parameters['NewUserName'].default == 'creator'
        assert template.parameters['AppendIndexHtml'].allowed_values == ['Enabled', 'Disabled']

    def test_interface_metadata(self, template):
        domain = template.parameters['DomainName']
        assert domain.label == 'Domain Name'
        assert domain.group == 'Domain Parameters'
        assert template.parameters['NewUserName'].group == 'User for Programmatic Access'

    def test_short_form_tags_expanded(self, template):
        bucket = template.resources['SiteBucket']
        assert bucket.properties['BucketName'] == {
            'Fn::Join': ['-', {'Fn::Split': ['.', {'Ref': 'DomainName'}]}]
        }
        statement = template.resources['SiteBucketPolicy'].properties['PolicyDocument']['Statement'][0]
        assert statement['Principal']['CanonicalUser'] == {
            'Fn::GetAtt': ['CloudFrontOAI', 'S3CanonicalUserId']
        }

    def test_dates_stay_strings(self, template):
        policy = template.resources['SiteBucketPolicy'].properties['PolicyDocument']
        assert policy['Version'] == '2012-10-17'

    def test_static_references_cover_both_branches(self, template):
        deps = template.resources['CloudFrontDistribution'].dependencies
        assert set(deps) == {'RewriteFunction', 'SiteBucket', 'CloudFrontOAI', 'Certificate'}
        assert template.resources['UserAccessKey'].dependencies == ['NewUser']

    def test_render_with_rewrite_disabled(self, template):
        rendered = template.render(SITE_PARAMS, PSEUDO)

        assert rendered.excluded == ['RewriteFunction']
        assert 'RewriteFunction' not in rendered.resource_names
        assert rendered.conditions == {'CreateRewriteFunction': False}

        bucket = rendered.get_resource('SiteBucket')
        assert bucket.properties == {'BucketName': 'www-example-org'}

        dist = rendered.get_resource('CloudFrontDistribution')
        config = dist.properties['DistributionConfig']
        assert 'FunctionAssociations' not in config['DefaultCacheBehavior']
        assert 'Logging' not in config
        assert config['Comment'] == 'Distribution for www.example.org'
        assert dist.dependencies == ['SiteBucket', 'CloudFrontOAI', 'Certificate']

    def test_render_with_rewrite_enabled(self, template):
        params = dict(SITE_PARAMS, AppendIndexHtml='Enabled')
        rendered = template.render(params, PSEUDO)

        assert rendered.excluded == []
        function = rendered.get_resource('RewriteFunction')
        assert function.properties['Name'] == {'Fn::Sub': 'append-index-to-${SiteBucket}'}
        assert function.dependencies == ['SiteBucket']

        dist = rendered.get_resource('CloudFrontDistribution')
        associations = dist.properties['DistributionConfig']['DefaultCacheBehavior']['FunctionAssociations']
        assert associations == [
            {'EventType': 'viewer-request', 'FunctionARN': {'Fn::GetAtt': ['RewriteFunction', 'FunctionARN']}}
        ]
        assert 'RewriteFunction' in dist.dependencies

    def test_policy_keeps_partial_sub(self, template):
        rendered = template.render(SITE_PARAMS, PSEUDO)
        policy = rendered.get_resource('SiteBucketPolicy')
        assert policy.properties['Bucket'] == {'Ref': 'SiteBucket'}
        statement = policy.properties['PolicyDocument']['Statement'][0]
        assert statement['Resource'] == {'Fn::Sub': 'arn:aws:s3:::${SiteBucket}/*'}
        assert policy.dependencies == ['SiteBucket', 'CloudFrontOAI']

    def test_domain_pattern_rejected(self, template):
        params = dict(SITE_PARAMS, DomainName='bad domain!')
        with pytest.raises(ParameterError, match='does not match pattern'):
            template.render(params, PSEUDO)

    def test_allowed_values_rejected(self, template):
        params = dict(SITE_PARAMS, AppendIndexHtml='Maybe')
        with pytest.raises(ParameterError, match='not in allowed values'):
            template.render(params, PSEUDO)

    def test_missing_required_parameters(self, template):
        with pytest.raises(ParameterError, match='HostedZoneId, DomainName'):
            template.render({}, PSEUDO)

    def test_unknown_parameter(self, template):
        with pytest.raises(ParameterError, match='Unknown parameter'):
            template.render(dict(SITE_PARAMS, Colour='blue'), PSEUDO)

    def test_active_outputs(self, template):
        rendered = template.render(SITE_PARAMS, PSEUDO)
        assert [o.name for o in rendered.active_outputs()] == ['BucketName', 'AccessKey', 'SecretKey']


class TestTemplateValidation:
    """Tests for structural and reference validation."""

    def test_unknown_section(self):
        with pytest.raises(ParseError, match='Unknown template section: Mappings'):
            Template.from_dict(_minimal(Mappings={}))

    def test_no_resources(self):
        with pytest.raises(ParseError, match='at least one resource'):
            Template.from_dict({'Resources': {}})

    def test_missing_type(self):
        with pytest.raises(ParseError, match='missing required field: Type'):
            Template.from_dict({'Resources': {'Bucket': {'Properties': {}}}})

    def test_invalid_logical_name(self):
        with pytest.raises(ParseError, match='must be alphanumeric'):
            Template.from_dict({'Resources': {'my-bucket': {'Type': 'AWS::S3::Bucket'}}})

    def test_parameter_resource_name_clash(self):
        data = _minimal(Parameters={'Bucket': {'Type': 'String'}})
        with pytest.raises(ParseError, match='used by both'):
            Template.from_dict(data)

    def test_undefined_ref(self):
        data = _minimal()
        data['Resources']['Policy'] = {
            'Type': 'AWS::S3::BucketPolicy',
            'Properties': {'Bucket': {'Ref': 'Missing'}},
        }
        with pytest.raises(TemplateReferenceError, match="undefined name 'Missing'"):
            Template.from_dict(data)

    def test_undefined_getatt(self):
        data = _minimal()
        data['Resources']['Bucket']['Properties'] = {'Tag': {'Fn::GetAtt': ['Other', 'Arn']}}
        with pytest.raises(TemplateReferenceError, match="undefined resource 'Other'"):
            Template.from_dict(data)

    def test_undefined_depends_on(self):
        data = _minimal()
        data['Resources']['Bucket']['DependsOn'] = 'Missing'
        with pytest.raises(TemplateReferenceError, match='DependsOn'):
            Template.from_dict(data)

    def test_unknown_resource_condition(self):
        data = _minimal()
        data['Resources']['Bucket']['Condition'] = 'Nope'
        with pytest.raises(ParseError, match="unknown condition 'Nope'"):
            Template.from_dict(data)

    def test_condition_cannot_reference_resource(self):
        data = _minimal(Conditions={'C': {'Fn::Equals': [{'Ref': 'Bucket'}, 'x']}})
        with pytest.raises(ParseError, match='cannot reference resource'):
            Template.from_dict(data)

    def test_condition_must_be_condition_function(self):
        data = _minimal(Conditions={'C': {'Fn::Join': ['', ['a']]}})
        with pytest.raises(ParseError, match='must be a condition function'):
            Template.from_dict(data)

    def test_unsupported_deletion_policy(self):
        data = _minimal()
        data['Resources']['Bucket']['DeletionPolicy'] = 'Snapshot'
        with pytest.raises(ParseError, match='unsupported DeletionPolicy'):
            Template.from_dict(data)

    @pytest.mark.parametrize('interface,message', [
        ({'ParameterGroups': ['Domain']}, r'ParameterGroups\[0\] must be a mapping'),
        ({'ParameterGroups': [{'Label': 'Domain', 'Parameters': ['Name']}]}, r'ParameterGroups\[0\].Label'),
        ({'ParameterGroups': {'Label': {'default': 'Domain'}}}, 'ParameterGroups must be a list'),
        ({'ParameterLabels': ['Name']}, 'ParameterLabels must be a mapping'),
    ])
    def test_malformed_interface_metadata(self, interface, message):
        data = _minimal(
            Parameters={'Name': {'Type': 'String', 'Default': 'site'}},
            Metadata={'AWS::CloudFormation::Interface': interface},
        )
        with pytest.raises(ParseError, match=message):
            Template.from_dict(data)

    def test_depends_on_string_normalised(self, site_template):
        site_template['Resources']['DNSRecord']['DependsOn'] = 'Bucket'
        template = Template.from_dict(site_template)
        assert template.resources['DNSRecord'].depends_on == ['Bucket']
        assert template.resources['DNSRecord'].dependencies == ['Bucket', 'Distribution']


class TestRender:
    """Tests for Template.render() on small templates."""

    def test_site_chain_dependencies(self, site_template):
        rendered = Template.from_dict(site_template).render({}, PSEUDO)
        deps = {r.name: r.dependencies for r in rendered.resources}
        assert deps == {'Bucket': [], 'Distribution': ['Bucket'], 'DNSRecord': ['Distribution']}

    def test_resource_references_stay_symbolic(self):
        data = {
            'Parameters': {'Suffix': {'Type': 'String', 'Default': 'logs'}},
            'Resources': {
                'Store': {'Type': 'AWS::S3::Bucket'},
                'Consumer': {
                    'Type': 'Custom::Consumer',
                    'Properties': {
                        'Target': {'Ref': 'Store'},
                        'Arn': {'Fn::GetAtt': ['Store', 'Arn']},
                        'Path': {'Fn::Sub': '${Store}/${Suffix}'},
                    },
                },
            },
        }

        rendered = Template.from_dict(data).render({}, PSEUDO)

        consumer = rendered.get_resource('Consumer')
        assert consumer.properties == {
            'Target': {'Ref': 'Store'},
            'Arn': {'Fn::GetAtt': ['Store', 'Arn']},
            'Path': {'Fn::Sub': '${Store}/logs'},
        }
        assert consumer.dependencies == ['Store']

    def test_depends_on_excluded_resource(self):
        data = {
            'Parameters': {'Enable': {'Type': 'String', 'Default': 'no'}},
            'Conditions': {'On': {'Fn::Equals': [{'Ref': 'Enable'}, 'yes']}},
            'Resources': {
                'Optional': {'Type': 'AWS::S3::Bucket', 'Condition': 'On'},
                'Needs': {'Type': 'AWS::S3::Bucket', 'DependsOn': 'Optional'},
            },
        }
        template = Template.from_dict(data)
        with pytest.raises(TemplateReferenceError, match='excluded by its condition'):
            template.render({}, PSEUDO)
        rendered = template.render({'Enable': 'yes'}, PSEUDO)
        assert rendered.get_resource('Needs').dependencies == ['Optional']

    def test_deletion_policy_carried(self, site_template):
        site_template['Resources']['Bucket']['DeletionPolicy'] = 'Retain'
        rendered = Template.from_dict(site_template).render({}, PSEUDO)
        assert rendered.get_resource('Bucket').deletion_policy == 'Retain'

    def test_get_resource_unknown(self, site_template):
        rendered = Template.from_dict(site_template).render({}, PSEUDO)
        with pytest.raises(KeyError):
            rendered.get_resource('Nope')


class TestParameter:
    """Tests for Parameter coercion."""

    def test_number(self):
        param = Parameter(name='Size', type='Number', min_value=1, max_value=10)
        assert param.coerce('5') == 5
        assert param.coerce('2.5') == 2.5
        with pytest.raises(ParameterError, match='>= 1'):
            param.coerce('0')
        with pytest.raises(ParameterError, match='must be a number'):
            param.coerce('big')

    def test_comma_delimited_list(self):
        param = Parameter(name='Names', type='CommaDelimitedList')
        assert param.coerce('a, b,c') == ['a', 'b', 'c']

    def test_list_of_numbers(self):
        param = Parameter(name='Ports', type='List<Number>')
        assert param.coerce('80,443') == [80, 443]

    def test_length_bounds(self):
        param = Parameter(name='Name', type='String', min_length=2, max_length=4)
        assert param.coerce('abc') == 'abc'
        with pytest.raises(ParameterError, match='at least 2'):
            param.coerce('a')
        with pytest.raises(ParameterError, match='at most 4'):
            param.coerce('abcde')

    def test_invalid_pattern_at_load(self):
        with pytest.raises(ParseError, match='invalid AllowedPattern'):
            Parameter.from_dict('Name', {'Type': 'String', 'AllowedPattern': '('})

    def test_no_echo(self):
        param = Parameter.from_dict('Secret', {'Type': 'String', 'NoEcho': True})
        assert param.no_echo


class TestLoading:
    """Tests for template text parsing and loading."""

    def test_load_inline_json(self, site_template):
        template = load_template(json_str=json.dumps(site_template))
        assert list(template.resources) == ['Bucket', 'Distribution', 'DNSRecord']
        assert template.source_path is None

    def test_load_missing_file(self, tmp_path):
        with pytest.raises(ParseError, match='not found'):
            load_template(file_path=str(tmp_path / 'missing.yaml'))

    def test_no_source(self):
        with pytest.raises(ParseError, match='No template source'):
            load_template()

    def test_invalid_yaml(self):
        with pytest.raises(ParseError, match='Invalid template'):
            parse_template_text('Resources: [unclosed')

    def test_yaml_condition_tags(self):
        text = (
            "Conditions:\n"
            "  Both: !And [!Condition A, !Not [!Equals [a, b]]]\n"
        )
        data = parse_template_text(text)
        assert data['Conditions']['Both'] == {
            'Fn::And': [{'Condition': 'A'}, {'Fn::Not': [{'Fn::Equals': ['a', 'b']}]}]
        }

    def test_load_file_records_source(self, tmp_path, site_template):
        path = tmp_path / 'site.json'
        path.write_text(json.dumps(site_template))
        template = TemplateLoader().load_file(path)
        assert template.source_path == path
