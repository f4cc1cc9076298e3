import http
import http.server
import logging
import sys

from typing import override

from prometheus_client import Counter

from postlistener.application import Application, up
from postlistener.body import BodyTooLargeError, decode_body, read_body_bytes

# The payloads are plain text even though the content type claims JSON
CONTENT_TYPE = "application/json"
POST_RECEIVED = "POST request received"
ONLY_POST_SUPPORTED = "Only POST method is supported"
BODY_TOO_LARGE = "Request body too large"

requests_counter = Counter(
        'requests',
        'Responses written by the post listener',
        ['method', 'status'] )

request_body_bytes = Counter(
        'request_body_bytes',
        'Bytes of POST request bodies accepted' )

access_log = logging.getLogger( "access" )


def describe_request( handler: http.server.BaseHTTPRequestHandler ) -> dict:
    return {
        "method":        handler.command,
        "url":           handler.path,
        "httpVersion":   handler.request_version,
        "remoteAddress": handler.client_address[0],
        "remotePort":    handler.client_address[1],
        "headers":       list( handler.headers.items() ),
    }


def make_handler( max_body_size: int | None = None ) -> type[http.server.BaseHTTPRequestHandler]:
    class HTTPRequestHandler( http.server.BaseHTTPRequestHandler ):
        def _send( self, status: http.HTTPStatus, response: str ):
            payload = response.encode( "utf-8" )
            self.send_response( status )
            self.send_header( "Content-Type", CONTENT_TYPE )
            self.send_header( "Content-Length", str( len( payload ) ) )
            self.end_headers()
            if self.command != http.HTTPMethod.HEAD:
                self.wfile.write( payload )
            # Keep the label set bounded when clients send arbitrary method tokens
            method = self.command if self.command in http.HTTPMethod.__members__ else "OTHER"
            requests_counter.labels( method, str( int( status ) ) ).inc()

        def do_POST( self ): # pylint: disable=invalid-name
            # Framing errors and disconnects propagate to the server, which logs them and drops
            # the connection without a response
            try:
                body = read_body_bytes( self.rfile, self.headers, max_body_size )
            except BodyTooLargeError as e:
                logging.warning( "Rejecting POST %s from %s: %s", self.path, self.address_string(), e )
                self.close_connection = True
                self._send( http.HTTPStatus.REQUEST_ENTITY_TOO_LARGE, BODY_TOO_LARGE )
                return

            request_body_bytes.inc( len( body ) )
            logging.info( "Received POST request with body: %s", decode_body( body ) )
            logging.info( "Received POST request with req: %s", describe_request( self ) )
            self._send( http.HTTPStatus.OK, POST_RECEIVED )

        def method_not_allowed( self ):
            # The body, if any, is left unread. The connection closes after the response.
            self._send( http.HTTPStatus.METHOD_NOT_ALLOWED, ONLY_POST_SUPPORTED )

        def __getattr__( self, name ):
            # BaseHTTPRequestHandler dispatches on `do_<command>`; every command but POST lands here
            if name.startswith( "do_" ):
                return self.method_not_allowed
            raise AttributeError( name )

        @override
        def log_message( self, format, *args ): # pylint: disable=redefined-builtin
            access_log.info( "%s - %s", self.address_string(), format % args )

    return HTTPRequestHandler


class PostListener( Application ):
    def __init__( self, args ):
        super().__init__( args )
        self._max_body_size = self._config.get( "max_body_size" )
        if self._max_body_size is not None and \
           ( not isinstance( self._max_body_size, int ) or isinstance( self._max_body_size, bool )
             or self._max_body_size < 0 ):
            logging.error( "Ignoring invalid max_body_size %r", self._max_body_size )
            self._max_body_size = None

    @override
    def _get_httpd_handler( self ) -> type[http.server.BaseHTTPRequestHandler]:
        return make_handler( max_body_size=self._max_body_size )

    @override
    def main( self ) -> int:
        result = super().main()
        if result != 0:
            return result
        up.set( 1 )
        self._terminate_semaphore.acquire()

        return 0


def main() -> int:
    return PostListener( sys.argv ).main()


if __name__ == '__main__':
    sys.exit( main() )
