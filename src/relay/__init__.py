"""
Relay package — forwards newly uploaded bucket documents and queued
outbox rows to a WhatsApp group, and archives inbound chat messages.

A single ``ConnectionManager`` owns the paired WhatsApp session; the
bucket and outbox engines send through it, and the inbox archiver
listens to its inbound stream.
"""
