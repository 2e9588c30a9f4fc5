from concurrent.futures import ThreadPoolExecutor
from flask import Flask
import logging
from logging import config as logging_config
import os
from werkzeug.middleware.proxy_fix import ProxyFix

from fhir_adapter import api
from fhir_adapter.audit import audit_entry, audit_log_init
from fhir_adapter.bundle import BundleAssembler
from fhir_adapter.dynamic_factory import load_class, load_handlers, load_modifiers
from fhir_adapter.engine import InteractionEngine
from fhir_adapter.hooks import HookChain
from fhir_adapter.model import SCHEMA
from fhir_adapter.parameter_map import ParameterMapProvider
from fhir_adapter.registry import HandlerRegistry
from fhir_adapter.resolvers import StaticAuthorityResolver, StaticConceptResolver
from fhir_adapter.rewriter import QueryRewriter

EXTENSION_NAME = 'fhir_adapter'


def create_app(testing=False, cli=False):
    """Application factory, used to create application
    """
    app = Flask('fhir_adapter')
    app.config.from_object('fhir_adapter.config')
    app.config['TESTING'] = testing

    configure_logging(app)
    configure_extensions(app, cli)
    register_blueprints(app)
    configure_proxy(app)

    return app


def configure_logging(app):
    app.logger  # must call to initialize prior to config or it'll replace

    config = 'logging.ini'
    if not os.path.exists(config):
        # look above the testing dir when testing or debugging locally
        config = os.path.join('..', config)

    logging_config.fileConfig(config, disable_existing_loggers=False)
    app.logger.setLevel(getattr(logging, app.config['LOG_LEVEL'].upper()))
    app.logger.debug(
        "fhir adapter logging initialized",
        extra={'tags': ['testing', 'logging', 'app']})

    if not app.config['AUDIT_SERVER_URL']:
        return

    audit_log_init(app)
    audit_entry(
        "fhir adapter logging initialized",
        extra={'tags': ['testing', 'logging', 'events'],
            'version': app.config['VERSION_STRING']})


def configure_resolvers(app):
    """Identifier authority and concept resolvers, configured class or static tables"""
    if app.config['AUTHORITY_RESOLVER']:
        authority_resolver = load_class(app.config['AUTHORITY_RESOLVER'])()
    else:
        authority_resolver = StaticAuthorityResolver(app.config['AUTHORITIES'])

    if app.config['CONCEPT_RESOLVER']:
        concept_resolver = load_class(app.config['CONCEPT_RESOLVER'])()
    else:
        concept_resolver = StaticConceptResolver(
            app.config['CODE_SYSTEMS'], app.config['CONCEPTS'])
    return authority_resolver, concept_resolver


def configure_extensions(app, cli):
    """Compose the interaction engine, once per application
    """
    parameter_map = ParameterMapProvider(app.config['PARAMETER_MAP_OVERRIDES']).get()
    authority_resolver, concept_resolver = configure_resolvers(app)
    rewriter = QueryRewriter(
        parameter_map, authority_resolver, concept_resolver,
        default_count=app.config['DEFAULT_PAGE_SIZE'])

    registry = load_handlers(app, HandlerRegistry())

    executor = None
    if app.config['SEARCH_MAX_WORKERS'] > 0 and not cli:
        executor = ThreadPoolExecutor(
            max_workers=app.config['SEARCH_MAX_WORKERS'],
            thread_name_prefix='fhir-adapter-map')

    app.extensions[EXTENSION_NAME] = InteractionEngine(
        registry=registry,
        rewriter=rewriter,
        assembler=BundleAssembler(app.config['FHIR_BASE_URI']),
        hooks=HookChain(load_modifiers(app)),
        schema=SCHEMA,
        executor=executor)
    app.logger.debug(
        "interaction engine ready for %s", ", ".join(sorted(registry.list_all())))


def register_blueprints(app):
    """register all blueprints for application
    """
    app.register_blueprint(api.views.base_blueprint)
    app.register_blueprint(api.fhir.blueprint)


def configure_proxy(app):
    """Add werkzeug fixer to detect headers applied by upstream reverse proxy"""
    if app.config.get('PREFERRED_URL_SCHEME', '').lower() == 'https':
        app.wsgi_app = ProxyFix(
            app=app.wsgi_app,

            # trust X-Forwarded-Host
            x_host=1,

            # trust X-Forwarded-Port
            x_port=1,
        )
