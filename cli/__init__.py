"""
Signing Backend CLI

Command line front-end over the Request Dispatcher.
"""
