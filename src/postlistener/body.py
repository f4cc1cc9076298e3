""" Reading request bodies off an `http.server` connection.

    The body is consumed as a sequence of chunks in arrival order. Two framings are understood:
    `Transfer-Encoding: chunked` and `Content-Length`. A request carrying neither has no body.
"""
from email.message import Message
from typing import BinaryIO, Iterator

CHUNK_SIZE = 64 * 1024

# Bound on a single chunk-size or trailer line, not on the body
MAX_LINE_LENGTH = 64 * 1024


class BodyError( Exception ):
    pass


class MalformedBodyError( BodyError, ValueError ):
    pass


class IncompleteBodyError( BodyError, ConnectionError ):
    pass


class BodyTooLargeError( BodyError ):
    def __init__( self, limit: int ):
        super().__init__( f"Request body exceeds {limit} bytes" )
        self.limit = limit


def is_chunked( headers: Message ) -> bool:
    encodings = [ encoding.strip().lower()
                  for value in headers.get_all( 'Transfer-Encoding', [] )
                  for encoding in value.split( ',' ) ]
    return len( encodings ) > 0 and encodings[-1] == 'chunked'


def get_content_length( headers: Message ) -> int:
    values = headers.get_all( 'Content-Length', [] )
    if len( values ) == 0:
        return 0
    # Repeated headers are only acceptable when they agree
    if len( set( value.strip() for value in values ) ) != 1:
        raise MalformedBodyError( f"Conflicting Content-Length headers: {values}" )
    value = values[0].strip()
    if not ( value.isascii() and value.isdigit() ):
        raise MalformedBodyError( f"Invalid Content-Length: {value!r}" )
    return int( value )


def _read_line( rfile: BinaryIO ) -> bytes:
    line = rfile.readline( MAX_LINE_LENGTH + 1 )
    if len( line ) > MAX_LINE_LENGTH:
        raise MalformedBodyError( "Chunk framing line too long" )
    if not line.endswith( b"\n" ):
        raise IncompleteBodyError( "Connection closed in the middle of a chunk header" )
    return line


def _read_exactly( rfile: BinaryIO, length: int, chunk_size: int ) -> Iterator[bytes]:
    remaining = length
    while remaining > 0:
        data = rfile.read1( min( remaining, chunk_size ) )
        if not data:
            raise IncompleteBodyError(
                f"Connection closed with {remaining} of {length} body bytes outstanding" )
        remaining -= len( data )
        yield data


def _iter_chunked( rfile: BinaryIO, chunk_size: int ) -> Iterator[bytes]:
    while True:
        size_line = _read_line( rfile ).split( b";", 1 )[0].strip()
        try:
            size = int( size_line, 16 )
        except ValueError as e:
            raise MalformedBodyError( f"Invalid chunk size: {size_line!r}" ) from e
        if size < 0:
            raise MalformedBodyError( f"Invalid chunk size: {size_line!r}" )

        if size == 0:
            # Trailer section ends with an empty line
            while _read_line( rfile ) not in ( b"\r\n", b"\n" ):
                pass
            return

        yield from _read_exactly( rfile, size, chunk_size )
        if _read_line( rfile ) not in ( b"\r\n", b"\n" ):
            raise MalformedBodyError( "Chunk data is not terminated by CRLF" )


def iter_body( rfile: BinaryIO, headers: Message, chunk_size: int = CHUNK_SIZE ) -> Iterator[bytes]:
    """ Yields the request body in arrival order. Raises `MalformedBodyError` when the framing
        cannot be parsed and `IncompleteBodyError` when the peer goes away before the end of
        the body. """
    if is_chunked( headers ):
        return _iter_chunked( rfile, chunk_size )
    return _read_exactly( rfile, get_content_length( headers ), chunk_size )


def read_body_bytes( rfile: BinaryIO,
                     headers: Message,
                     max_body_size: int | None = None,
                     chunk_size: int = CHUNK_SIZE ) -> bytes:
    """ Accumulates the whole request body.

        With `max_body_size` set, `BodyTooLargeError` is raised as soon as the buffered body
        grows past it; the remainder is left unread. """
    buffer = bytearray()
    for chunk in iter_body( rfile, headers, chunk_size ):
        buffer += chunk
        if max_body_size is not None and len( buffer ) > max_body_size:
            raise BodyTooLargeError( max_body_size )
    return bytes( buffer )


def read_body( rfile: BinaryIO,
               headers: Message,
               max_body_size: int | None = None,
               chunk_size: int = CHUNK_SIZE ) -> str:
    """ Like `read_body_bytes`, decoded as UTF-8. Undecodable bytes are replaced rather than
        rejected. """
    return decode_body( read_body_bytes( rfile, headers, max_body_size, chunk_size ) )


def decode_body( body: bytes ) -> str:
    return body.decode( "utf-8", errors="replace" )
