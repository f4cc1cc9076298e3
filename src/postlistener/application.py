from abc import abstractmethod
import argparse
import inspect
import json
import logging
import os
import signal
import sys
import threading
import errno
import http
import http.server
import socket

from typing import Iterable, override

import jsonschema
import jsonschema.exceptions
import yaml

from prometheus_client.registry import Collector
from prometheus_client.core import GaugeMetricFamily, REGISTRY
from prometheus_client.metrics_core import Metric
from prometheus_client import start_http_server, Gauge

up = Gauge(
        'up',
        'Whether or not the post listener is running' )
up.set( 0 )


class LoggingHTTPServer( http.server.HTTPServer ):
    """ An HTTPServer that reports handler failures through `logging` instead of printing the
        traceback to stderr. The connection is still dropped without a response. """

    # A second listener on the same port must fail to bind
    allow_reuse_port = False

    @override
    def handle_error( self, request, client_address ):
        logging.exception( "Error while handling request from %s:%s", *client_address[:2] )


class DualStackHTTPServer( LoggingHTTPServer ):
    """ Listens on `::` and accepts IPv4 clients too, as IPv4-mapped addresses. """

    address_family = socket.AF_INET6

    @override
    def server_bind( self ):
        self.socket.setsockopt( socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 0 )
        super().server_bind()


class Application:
    def __init__( self, args ):
        self._args = args
        self._parsed_args = self.get_arg_parser().parse_args(self._args[1:])
        self.setup_logging()

        config_schema = \
            os.path.join(
                os.path.dirname(inspect.getfile(self.__class__)),
                "config.schema.json")
        self._config = self._get_config(config_filename=self._parsed_args.config_file,
                                        schema_filename=config_schema)
        self._httpd = None
        self._terminate_semaphore = None

    def start_prometheus( self ):
        start_http_server( int( self._parsed_args.prometheus_port ) )

    def get_arg_parser( self ) -> argparse.ArgumentParser:
        parser = argparse.ArgumentParser(
            prog="Post Listener",
            description="Accepts POST requests, logs their bodies and acknowledges them")
        parser.add_argument('-c', '--config',
                            help='Path to config file',
                            default=None,
                            dest='config_file')
        parser.add_argument('--prometheus-port',
                            help='The port the prometheus client will bind to',
                            default='9000',
                            dest='prometheus_port')
        parser.add_argument('--http-port',
                            help='The port the http server will bind to',
                            default='3000',
                            dest='http_port')
        return parser

    def _get_resource_file_contents( self, file_path: str ) -> str:
        if os.path.exists( file_path ):
            with open( file_path, 'r', encoding='utf-8' ) as f:
                return f.read()
        raise FileNotFoundError( f"Could not find resource file {file_path}" )

    def _get_yaml_resource_file_contents( self, file_path: str ) -> object:
        return yaml.safe_load(self._get_resource_file_contents(file_path))

    def _get_schema_from_file( self, file_path ) -> object | None:
        try:
            content = self._get_resource_file_contents(file_path)
            if file_path.endswith('.json'):
                return json.loads(content)

            if file_path.endswith('.yaml') or file_path.endswith('.yml'):
                return yaml.safe_load(content)

            logging.warning("unable to identify the content of resource file %s", file_path)
            return None
        except (OSError, ValueError, yaml.YAMLError):
            logging.warning("Unable to load schema file %s", file_path)
            return None

    def _get_config( self, config_filename, schema_filename ) -> dict:
        config = None
        if config_filename is not None:
            config = self._get_yaml_resource_file_contents(config_filename)
        if config is None:
            logging.info( "No configuration given, using defaults" )
            config = {}

        if not isinstance(config, dict):
            raise ValueError( f"Expected a mapping at the top of {config_filename}, "
                              f"found {type(config).__name__}" )

        if schema_filename is not None and os.path.exists( schema_filename ):
            schema = self._get_schema_from_file(schema_filename)

            # Purposefully only log an error. We want to continue to run if we can.
            if schema is not None:
                try:
                    jsonschema.validate(instance=config, schema=schema)
                except jsonschema.exceptions.ValidationError as e:
                    logging.error( "Error validating json: %s", e.message )
                except jsonschema.exceptions.SchemaError as e:
                    logging.error( "Error validating schema: %s", e.message )
        else:
            logging.warning( "Unable to find config schema file %s", schema_filename )

        logging.debug( "config: %s", config )
        return config


    def install_signal_handler(self):
        terminate_semaphore = threading.Semaphore(0)
        def signal_handler( signum, frame ):
            if signum in [ signal.SIGINT, signal.SIGTERM ]:
                terminate_semaphore.release()
        signal.signal( signal.SIGINT,  signal_handler )
        signal.signal( signal.SIGTERM, signal_handler )

        return terminate_semaphore

    def setup_collector(self):
        class CustomCollector(Collector):
            @override
            def collect( self ) -> Iterable[Metric]:
                return [
                    GaugeMetricFamily(
                        'python_threads',
                        'The number of threads reported by python\'s threading.active_count()',
                        value=threading.active_count())]

        REGISTRY.register(CustomCollector())

    def setup_logging(self):
        def set_log_level_from_environment(logger: str, envvar: str | None= None):
            if envvar is None:
                envvar = f"{logger.upper()}_LOG_LEVEL"
            if envvar not in os.environ:
                return
            level = logging.getLevelName(os.environ[envvar].upper())
            if isinstance(level, int):
                logging.getLogger(logger).setLevel(level=level)
            else:
                logging.warning("Unexpected log level `%s` for `%s`", os.environ[envvar], envvar)

        # Remove the default handlers. They allow log messages to contain a new line
        logging.getLogger().handlers = []

        default_level = logging.getLevelName(os.environ.get('DEFAULT_LOG_LEVEL', 'info').upper())
        if not isinstance(default_level, int):
            default_level = logging.INFO
        logging.getLogger().setLevel(default_level)

        class LogFormatter( logging.Formatter ):
            def __init__( self, fmt=None, datefmt=None ):
                super().__init__( fmt=fmt, datefmt=datefmt )
                self.string_formatter = logging.Formatter( "%(levelname)s:%(name)s:%(message)s" )

            @override
            def format( self, record ) -> str:
                return self.string_formatter.format( record ).replace( "\n", "\\n" )
        handler = logging.StreamHandler(stream=sys.stdout)
        handler.setFormatter(LogFormatter())
        logging.getLogger().addHandler(handler)

        for key in \
            filter( lambda x: x.endswith( '_LOG_LEVEL' ) and x != 'DEFAULT_LOG_LEVEL',
                    os.environ ):
            set_log_level_from_environment(key.removesuffix('_LOG_LEVEL').lower(), key)

        def custom_hook( args ):
            logging.error( "Uncaught exception in thread %s",
                           args.thread.name if args.thread is not None else None,
                           exc_info=(args.exc_type, args.exc_value, args.exc_traceback) )
        threading.excepthook = custom_hook

    @abstractmethod
    def _get_httpd_handler(self) -> type[http.server.BaseHTTPRequestHandler]:
        pass

    def bind_http_server(self) -> LoggingHTTPServer:
        # Bind in the calling thread so a port that is already in use is fatal
        port = int(self._parsed_args.http_port)
        self._httpd = self._create_http_server( port )
        logging.info( "Server is listening on port %d", self._httpd.server_address[1] )
        return self._httpd

    def _create_http_server(self, port: int) -> LoggingHTTPServer:
        if socket.has_ipv6:
            try:
                return DualStackHTTPServer( ("::", port), self._get_httpd_handler() )
            except OSError as e:
                # Hosts without IPv6 fall back to IPv4; anything else (port in use) is fatal
                if e.errno not in ( errno.EAFNOSUPPORT, errno.EADDRNOTAVAIL, errno.EPROTONOSUPPORT ):
                    raise
                logging.info( "IPv6 is unavailable (%s), listening on IPv4 only", e.strerror )
        return LoggingHTTPServer( ("", port), self._get_httpd_handler() )

    def start_http_server(self):
        if self._httpd is None:
            self.bind_http_server()
        httpd = threading.Thread( daemon=True, target=self._httpd.serve_forever, name="httpd" )
        httpd.start()

    def main(self) -> int:
        self._terminate_semaphore = self.install_signal_handler()
        self.bind_http_server()
        self.setup_collector()
        self.start_prometheus()
        self.start_http_server()

        return 0
