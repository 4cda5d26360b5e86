"""Rate-limited clients for Spotify, Ticketmaster and Setlist.fm."""

from encore.providers.setlistfm import SetlistFmClient
from encore.providers.spotify import SpotifyClient
from encore.providers.ticketmaster import TicketmasterClient

__all__ = ["SetlistFmClient", "SpotifyClient", "TicketmasterClient"]
