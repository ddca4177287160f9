"""
A small, hand-written client for Azure identity and Azure Blob Storage that talks to
the REST APIs directly rather than going through the Azure SDK for python
(https://github.com/Azure/azure-sdk-for-python), which pulls in dozens of packages.
"""
